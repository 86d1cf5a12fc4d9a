import logging
import os
import re
import time

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.middleware.gzip import GZipMiddleware
from starlette.middleware.httpsredirect import HTTPSRedirectMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware

from matchledger.database import Base, SessionLocal, engine, get_db
from matchledger.errors import LedgerError, NotAuthenticated, UnknownProfile
from matchledger.models import AppUser, AuditLog, Profile
from matchledger.schemas import (
    LoginRequest,
    MakeAdminRequest,
    PriorityUpdate,
    ProfileCreate,
    ProfileUpdate,
    ProfileView,
    RegisterRequest,
)
from matchledger.services import ledger
from matchledger.services.audit import write_audit_log
from matchledger.services.bootstrap import create_profile_with_login, seed_demo_data_if_empty
from matchledger.services.priority import (
    MAX_HIGH_PRIORITY,
    EdgeSnapshot,
    PriorityOutcome,
    edge_state,
    high_priority_count,
    remove_match,
    set_not_interested,
    set_priority,
)
from matchledger.services.projection import DashboardProjection
from matchledger.services.security import (
    AUTH_COOKIE,
    AUTH_SECRET,
    CSRF_COOKIE,
    InMemoryRateLimiter,
    build_csrf_token,
    build_session_payload,
    decode_payload,
    sign_payload,
    validate_password_policy,
    verify_csrf_token,
    verify_password,
)
from matchledger.services.settings import signups_enabled, toggle_signups

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Match Ledger", version="1.0.0")
Base.metadata.create_all(bind=engine)
app.add_middleware(GZipMiddleware, minimum_size=1024)

ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@matchledger.local")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "admin-change-me")
PROFILE_BOOTSTRAP_PASSWORD = os.getenv("PROFILE_BOOTSTRAP_PASSWORD", "profile-change-me")
COOKIE_SECURE = os.getenv("COOKIE_SECURE", "false").lower() == "true"
FORCE_HTTPS = os.getenv("FORCE_HTTPS", "false").lower() == "true"
ALLOWED_HOSTS = [h.strip() for h in os.getenv("ALLOWED_HOSTS", "*").split(",") if h.strip()]
LOCKOUT_SECONDS = int(os.getenv("LOCKOUT_SECONDS", str(15 * 60)))
MAX_FAILED_LOGINS = 5
TRUST_PROXY_HEADERS = os.getenv("TRUST_PROXY_HEADERS", "false").lower() == "true"
APP_ENV = os.getenv("APP_ENV", "development").lower()
SEED_ON_STARTUP = os.getenv(
    "SEED_ON_STARTUP",
    "true" if os.getenv("VERCEL") == "1" else "false",
).lower() == "true"

if ALLOWED_HOSTS != ["*"]:
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=ALLOWED_HOSTS)
if FORCE_HTTPS:
    app.add_middleware(HTTPSRedirectMiddleware)

rate_limiter = InMemoryRateLimiter()


def enforce_production_security():
    if APP_ENV not in {"prod", "production"}:
        return
    insecure = []
    if AUTH_SECRET == "matchledger-dev-secret-change-me":
        insecure.append("AUTH_SECRET must be set")
    if ADMIN_PASSWORD == "admin-change-me":
        insecure.append("ADMIN_PASSWORD must be changed from default")
    if not COOKIE_SECURE:
        insecure.append("COOKIE_SECURE must be true")
    if not FORCE_HTTPS:
        insecure.append("FORCE_HTTPS must be true")
    if ALLOWED_HOSTS == ["*"]:
        insecure.append("ALLOWED_HOSTS must be explicit (not *)")
    if insecure:
        raise RuntimeError("Production security configuration error: " + "; ".join(insecure))


enforce_production_security()


if SEED_ON_STARTUP:
    db = SessionLocal()
    try:
        seed_demo_data_if_empty(db, ADMIN_EMAIL, ADMIN_PASSWORD, PROFILE_BOOTSTRAP_PASSWORD)
    finally:
        db.close()


@app.exception_handler(LedgerError)
async def ledger_error_handler(_request: Request, exc: LedgerError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "error": type(exc).__name__},
    )


def _client_ip(request: Request) -> str:
    xff = request.headers.get("x-forwarded-for", "")
    if TRUST_PROXY_HEADERS and xff:
        return xff.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def current_user(request: Request) -> dict | None:
    token = request.cookies.get(AUTH_COOKIE)
    if not token:
        return None
    return decode_payload(token)


def current_profile(request: Request, db: Session = Depends(get_db)) -> Profile | None:
    """Identity provider: the signed session cookie resolved to a live profile row."""
    user = current_user(request)
    if not user:
        return None
    return db.get(Profile, user["profile_id"])


def api_user_or_401(request: Request) -> dict:
    user = current_user(request)
    if not user:
        raise NotAuthenticated()
    return user


def require_admin(request: Request, db: Session) -> dict:
    user = api_user_or_401(request)
    profile = db.get(Profile, user["profile_id"])
    # Admin rights are read from the row so revocation applies to live sessions.
    if not profile or not profile.is_admin:
        write_audit_log(db, user, "admin_access", "auth", request.url.path, "denied", {})
        raise HTTPException(status_code=403, detail="Forbidden")
    return user


def require_csrf_api(request: Request):
    submitted_token = request.headers.get("x-csrf-token", "")
    user = api_user_or_401(request)
    cookie_token = request.cookies.get(CSRF_COOKIE, "")
    if not verify_csrf_token(user.get("sid", ""), submitted_token, cookie_token):
        raise HTTPException(status_code=403, detail="Invalid CSRF token")


def check_rate_limit(request: Request, bucket: str, limit: int, period_seconds: int):
    key = f"{bucket}:{_client_ip(request)}"
    if not rate_limiter.allow(key, limit, period_seconds):
        raise HTTPException(status_code=429, detail="Rate limit exceeded")


def validate_text(value: str, field: str, max_len: int) -> str:
    cleaned = (value or "").strip()
    if re.search(r"[\x00-\x1f\x7f]", cleaned):
        raise HTTPException(status_code=400, detail=f"{field} contains invalid characters")
    if len(cleaned) > max_len:
        raise HTTPException(status_code=400, detail=f"{field} exceeds max length {max_len}")
    return cleaned


def validate_email(value: str, field: str = "email") -> str:
    cleaned = validate_text(value, field, 180).lower()
    if not re.fullmatch(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$", cleaned):
        raise HTTPException(status_code=400, detail=f"{field} is not a valid email")
    return cleaned


def _profile_view(profile: Profile) -> dict:
    return ProfileView(
        id=profile.id,
        email=profile.email,
        first_name=profile.first_name,
        last_name=profile.last_name,
        company_name=profile.company_name,
        bio=profile.bio or "",
        user_type=profile.user_type,
        is_admin=bool(profile.is_admin),
    ).model_dump()


def _run_mutation(db: Session, user: dict, action: str, counterpart_id: int, operation) -> PriorityOutcome:
    try:
        outcome = operation()
    except LedgerError as exc:
        status = "failed" if exc.status_code >= 500 else "denied"
        write_audit_log(
            db, user, action, "profile", str(counterpart_id), status, {"error": type(exc).__name__}
        )
        raise
    write_audit_log(
        db,
        user,
        action,
        "profile",
        str(counterpart_id),
        "success",
        {"state": outcome.state, "high_priority_count": outcome.quota_count},
    )
    return outcome


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Cache-Control"] = "no-store"
    if COOKIE_SECURE:
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    return response


@app.post("/v1/auth/login")
def login(payload: LoginRequest, request: Request, db: Session = Depends(get_db)):
    check_rate_limit(request, "login", limit=20, period_seconds=60)
    email = validate_email(payload.email)
    user_row = db.query(AppUser).filter(AppUser.email == email).first()
    now = int(time.time())
    if not user_row:
        write_audit_log(db, None, "login", "auth", email, "denied", {})
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if user_row.locked_until and user_row.locked_until > now:
        write_audit_log(db, None, "login", "auth", email, "denied", {"reason": "locked"})
        raise HTTPException(status_code=423, detail="Account temporarily locked")

    if not verify_password(payload.password, user_row.password_hash):
        user_row.failed_attempts += 1
        if user_row.failed_attempts >= MAX_FAILED_LOGINS:
            user_row.locked_until = now + LOCKOUT_SECONDS
            user_row.failed_attempts = 0
        db.commit()
        write_audit_log(db, None, "login", "auth", email, "denied", {"reason": "bad_password"})
        raise HTTPException(status_code=401, detail="Invalid credentials")

    user_row.failed_attempts = 0
    user_row.locked_until = 0
    db.commit()
    profile = db.get(Profile, user_row.profile_id)
    return _session_response(db, profile, "login", email)


def _session_response(db: Session, profile: Profile, action: str, email: str, status_code: int = 200) -> JSONResponse:
    session_payload = build_session_payload(profile)
    csrf = build_csrf_token(session_payload["sid"])
    write_audit_log(db, session_payload, action, "auth", email, "success", {})

    response = JSONResponse({"profile": _profile_view(profile), "csrf_token": csrf}, status_code=status_code)
    response.set_cookie(
        key=AUTH_COOKIE,
        value=sign_payload(session_payload),
        httponly=True,
        samesite="lax",
        secure=COOKIE_SECURE,
        max_age=60 * 60 * 8,
    )
    response.set_cookie(
        key=CSRF_COOKIE,
        value=csrf,
        httponly=False,
        samesite="strict",
        secure=COOKIE_SECURE,
        max_age=60 * 60 * 8,
    )
    return response


@app.post("/v1/auth/logout")
def logout(request: Request, db: Session = Depends(get_db)):
    write_audit_log(db, current_user(request), "logout", "auth", "", "success", {})
    response = JSONResponse({"ok": True})
    response.delete_cookie(AUTH_COOKIE)
    response.delete_cookie(CSRF_COOKIE)
    return response


@app.get("/v1/auth/signup-status")
def signup_status(db: Session = Depends(get_db)):
    return {"signups_enabled": signups_enabled(db)}


@app.post("/v1/auth/register")
def register(payload: RegisterRequest, request: Request, db: Session = Depends(get_db)):
    check_rate_limit(request, "register", limit=10, period_seconds=60)
    email = validate_email(payload.email)
    if not signups_enabled(db):
        write_audit_log(db, None, "register", "auth", email, "denied", {"reason": "signups_disabled"})
        raise HTTPException(status_code=403, detail="Signups are currently disabled")
    ok, err = validate_password_policy(payload.password)
    if not ok:
        raise HTTPException(status_code=400, detail=err)
    if db.query(Profile).filter(Profile.email == email).first():
        raise HTTPException(status_code=409, detail="A profile with this email already exists")

    fields = {
        "email": email,
        "first_name": validate_text(payload.first_name, "first_name", 80),
        "last_name": validate_text(payload.last_name, "last_name", 80),
        "company_name": validate_text(payload.company_name, "company_name", 120),
        "bio": (payload.bio or "").replace("\x00", "").strip(),
        "user_type": payload.user_type,
    }
    profile = create_profile_with_login(db, fields, payload.password)
    logger.info("Registered %s profile %s", profile.user_type, profile.id)
    return _session_response(db, profile, "register", email, status_code=201)


@app.get("/v1/me")
def me(profile: Profile | None = Depends(current_profile), db: Session = Depends(get_db)):
    if profile is None:
        raise NotAuthenticated()
    count = high_priority_count(db, profile)
    return {
        "profile": _profile_view(profile),
        "high_priority_count": count,
        "high_priority_limit": MAX_HIGH_PRIORITY,
    }


@app.patch("/v1/me")
def update_me(
    payload: ProfileUpdate,
    request: Request,
    profile: Profile | None = Depends(current_profile),
    db: Session = Depends(get_db),
):
    user = api_user_or_401(request)
    if profile is None:
        raise NotAuthenticated()
    check_rate_limit(request, "profile_update_api", limit=30, period_seconds=60)
    require_csrf_api(request)

    limits = {"first_name": 80, "last_name": 80, "company_name": 120}
    changes = {}
    for field, value in payload.model_dump(exclude_unset=True).items():
        if value is None:
            continue
        if field == "bio":
            changes[field] = value.replace("\x00", "").strip()
        else:
            changes[field] = validate_text(value, field, limits[field])
    if changes.get("first_name") == "":
        raise HTTPException(status_code=400, detail="first_name is required")

    ledger.begin_write(db)
    for field, value in changes.items():
        setattr(profile, field, value)
    db.commit()
    write_audit_log(db, user, "update_profile", "profile", str(profile.id), "success", {"fields": sorted(changes)})
    return _profile_view(profile)


@app.get("/v1/dashboard")
def dashboard(profile: Profile | None = Depends(current_profile), db: Session = Depends(get_db)):
    return DashboardProjection.load(db, profile).snapshot()


@app.get("/v1/priority-matches")
def my_priority_matches(profile: Profile | None = Depends(current_profile), db: Session = Depends(get_db)):
    if profile is None:
        raise NotAuthenticated()
    edges = [EdgeSnapshot.from_row(row) for row in ledger.list_edges_for_profile(db, profile.id)]
    return {
        "profile_id": profile.id,
        "matches": [
            {**edge.as_dict(), "counterpart_id": edge.investor_id if edge.founder_id == profile.id else edge.founder_id,
             "state": edge_state(edge)}
            for edge in edges
        ],
    }


@app.put("/v1/priority-matches/{counterpart_id}")
def api_set_priority(
    counterpart_id: int,
    payload: PriorityUpdate,
    request: Request,
    profile: Profile | None = Depends(current_profile),
    db: Session = Depends(get_db),
):
    user = api_user_or_401(request)
    check_rate_limit(request, "priority_api", limit=60, period_seconds=60)
    require_csrf_api(request)
    outcome = _run_mutation(
        db, user, "set_priority", counterpart_id,
        lambda: set_priority(db, profile, counterpart_id, payload.priority),
    )
    return outcome.as_dict()


@app.post("/v1/priority-matches/{counterpart_id}/not-interested")
def api_set_not_interested(
    counterpart_id: int,
    request: Request,
    profile: Profile | None = Depends(current_profile),
    db: Session = Depends(get_db),
):
    user = api_user_or_401(request)
    check_rate_limit(request, "priority_api", limit=60, period_seconds=60)
    require_csrf_api(request)
    outcome = _run_mutation(
        db, user, "set_not_interested", counterpart_id,
        lambda: set_not_interested(db, profile, counterpart_id),
    )
    return outcome.as_dict()


@app.delete("/v1/priority-matches/{counterpart_id}")
def api_remove_match(
    counterpart_id: int,
    request: Request,
    profile: Profile | None = Depends(current_profile),
    db: Session = Depends(get_db),
):
    user = api_user_or_401(request)
    check_rate_limit(request, "priority_api", limit=60, period_seconds=60)
    require_csrf_api(request)
    outcome = _run_mutation(
        db, user, "remove_match", counterpart_id,
        lambda: remove_match(db, profile, counterpart_id),
    )
    return outcome.as_dict()


@app.post("/v1/admin/profiles")
def admin_create_profile(payload: ProfileCreate, request: Request, db: Session = Depends(get_db)):
    user = require_admin(request, db)
    check_rate_limit(request, "profile_create_api", limit=20, period_seconds=60)
    require_csrf_api(request)

    email = validate_email(payload.email)
    ok, err = validate_password_policy(payload.password)
    if not ok:
        raise HTTPException(status_code=400, detail=err)
    if db.query(Profile).filter(Profile.email == email).first():
        raise HTTPException(status_code=409, detail="A profile with this email already exists")

    fields = {
        "email": email,
        "first_name": validate_text(payload.first_name, "first_name", 80),
        "last_name": validate_text(payload.last_name, "last_name", 80),
        "company_name": validate_text(payload.company_name, "company_name", 120),
        "bio": (payload.bio or "").replace("\x00", "").strip(),
        "user_type": payload.user_type,
    }
    profile = create_profile_with_login(db, fields, payload.password)
    write_audit_log(db, user, "create_profile", "profile", str(profile.id), "success", {"user_type": profile.user_type})
    return _profile_view(profile)


@app.get("/v1/admin/profiles")
def admin_list_profiles(request: Request, db: Session = Depends(get_db)):
    require_admin(request, db)
    rows = db.query(Profile).order_by(Profile.id.asc()).all()
    return {"profiles": [_profile_view(row) for row in rows]}


@app.post("/v1/admin/make-admin")
def admin_make_admin(payload: MakeAdminRequest, request: Request, db: Session = Depends(get_db)):
    user = require_admin(request, db)
    require_csrf_api(request)
    email = validate_email(payload.email)
    profile = db.query(Profile).filter(Profile.email == email).first()
    if not profile:
        write_audit_log(db, user, "make_admin", "profile", email, "denied", {"reason": "not_found"})
        raise UnknownProfile()
    profile.is_admin = True
    db.commit()
    write_audit_log(db, user, "make_admin", "profile", str(profile.id), "success", {})
    return _profile_view(profile)


@app.post("/v1/admin/signups/toggle")
def admin_toggle_signups(request: Request, db: Session = Depends(get_db)):
    user = require_admin(request, db)
    require_csrf_api(request)
    enabled = toggle_signups(db)
    write_audit_log(db, user, "toggle_signups", "setting", "signups_enabled", "success", {"enabled": enabled})
    return {"signups_enabled": enabled}


@app.get("/v1/admin/priority-matches")
def admin_priority_matches(request: Request, db: Session = Depends(get_db)):
    require_admin(request, db)
    edges = ledger.list_edges_all(db)
    profile_map = {row.id: row for row in db.query(Profile).all()}
    output = []
    for row in edges:
        edge = EdgeSnapshot.from_row(row)
        founder = profile_map.get(edge.founder_id)
        investor = profile_map.get(edge.investor_id)
        output.append(
            {
                **edge.as_dict(),
                "state": edge_state(edge),
                "founder_name": founder.display_name if founder else "",
                "founder_company": founder.company_name if founder else "",
                "investor_name": investor.display_name if investor else "",
                "investor_company": investor.company_name if investor else "",
            }
        )
    return {"count": len(output), "matches": output}


@app.get("/v1/admin/audit")
def admin_audit(request: Request, db: Session = Depends(get_db)):
    require_admin(request, db)
    logs = db.query(AuditLog).order_by(AuditLog.id.desc()).limit(200).all()
    return {
        "logs": [
            {
                "id": row.id,
                "actor_profile_id": row.actor_profile_id,
                "actor_label": row.actor_label,
                "action": row.action,
                "target_type": row.target_type,
                "target_id": row.target_id,
                "status": row.status,
                "details": row.details,
                "created_at": row.created_at.isoformat() if row.created_at else None,
            }
            for row in logs
        ]
    }


@app.get("/health")
def health_check():
    return {"status": "ok"}
