"""Fire concurrent high-priority submissions for one founder and report the outcome.

    python scripts/quota_race.py --investors 12 --workers 8
"""

import argparse
import sys
import tempfile
import threading
import time
from collections import Counter
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sqlalchemy.orm import sessionmaker

from matchledger.database import Base, build_engine
from matchledger.errors import LedgerError
from matchledger.models import Profile
from matchledger.services import ledger
from matchledger.services.priority import MAX_HIGH_PRIORITY, set_priority


def _seed(Session, investors: int) -> tuple[int, list[int]]:
    db = Session()
    try:
        founder = Profile(email="founder@race.local", first_name="Race", user_type="founder")
        db.add(founder)
        rows = [
            Profile(email=f"investor-{i}@race.local", first_name=f"Investor {i}", user_type="investor")
            for i in range(investors)
        ]
        db.add_all(rows)
        db.commit()
        return founder.id, [row.id for row in rows]
    finally:
        db.close()


def run_race(url: str, investors: int, workers: int):
    engine = build_engine(url)
    Base.metadata.create_all(bind=engine)
    Session = sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)
    founder_id, investor_ids = _seed(Session, investors)

    results = Counter()
    barrier = threading.Barrier(workers)
    lock = threading.Lock()

    def worker(slot: int):
        barrier.wait()
        for investor_id in investor_ids[slot::workers]:
            db = Session()
            try:
                viewer = db.get(Profile, founder_id)
                set_priority(db, viewer, investor_id, "high")
                outcome = "accepted"
            except LedgerError as exc:
                outcome = type(exc).__name__
            finally:
                db.close()
            with lock:
                results[outcome] += 1

    start = time.perf_counter()
    threads = [threading.Thread(target=worker, args=(i,)) for i in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    elapsed = (time.perf_counter() - start) * 1000

    db = Session()
    try:
        final = ledger.count_high_priority(db, founder_id)
    finally:
        db.close()
    engine.dispose()
    return final, dict(results), elapsed


def main():
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--database-url", default="")
    parser.add_argument("--investors", type=int, default=12)
    parser.add_argument("--workers", type=int, default=8)
    args = parser.parse_args()

    url = args.database_url or f"sqlite:///{Path(tempfile.mkdtemp()) / 'quota_race.db'}"
    final, results, elapsed = run_race(url, args.investors, args.workers)
    print(f"{args.workers} workers, {args.investors} investors in {elapsed:.1f}ms: {results}")
    print(f"final high priority count={final} (limit {MAX_HIGH_PRIORITY})")
    if final > MAX_HIGH_PRIORITY:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
