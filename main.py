import asyncio
import time
from contextlib import asynccontextmanager, suppress
from typing import Any, Dict, Optional

import structlog
from fastapi import Body, Depends, FastAPI, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import ConnectionFailure, PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import config
from auth import require_admin, require_auth
from container import Services, build_services
from errors import FixMyAreaError, ValidationError, messages_from_errors
from logging_config import bind_request, configure_logging, new_request_id
from ratelimit import sweep_periodically
from schemas import CommentCreate, Identity, IssueCreate, SendOtpRequest, VerifyOtpRequest

log = structlog.get_logger("fixmyarea.api")

FILTER_PARAMS = ("status", "category", "priority", "search", "sortBy", "sortOrder", "page", "limit")
ADMIN_FILTER_PARAMS = FILTER_PARAMS + ("reportedBy", "assignedTo")


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    if getattr(app.state, "services", None) is None:
        app.state.services = build_services()
    services: Services = app.state.services
    try:
        await services.ensure_indexes()
    except PyMongoError as exc:
        log.error("index_setup_failed", error=str(exc))
    try:
        await services.ensure_admin(config.ADMIN_EMAIL, config.ADMIN_NAME)
    except PyMongoError as exc:
        log.error("bootstrap_admin_failed", error=str(exc))
    sweeper = asyncio.create_task(sweep_periodically(services.limiter, config.RATE_LIMIT_SWEEP_SECONDS))
    log.info("startup", backend=services.database.backend, environment=config.ENVIRONMENT)
    yield
    sweeper.cancel()
    with suppress(asyncio.CancelledError):
        await sweeper
    await services.database.close()


app = FastAPI(title=config.APP_NAME, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or new_request_id()
    bind_request(request_id, method=request.method, path=request.url.path)
    start = time.perf_counter()
    response = await call_next(request)
    duration_ms = round((time.perf_counter() - start) * 1000, 1)
    log.info("request_handled", status=response.status_code, duration_ms=duration_ms)
    response.headers["X-Request-ID"] = request_id
    return response


# ------------------ Helpers ------------------

def get_services(request: Request) -> Services:
    return request.app.state.services


def ok(message: str, data: Any = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True, "message": message}
    if data is not None:
        body["data"] = data
    return body


def fail(status_code: int, message: str, data: Any = None, error: Optional[str] = None) -> JSONResponse:
    body: Dict[str, Any] = {"success": False, "message": message}
    if data is not None:
        body["data"] = data
    if error and config.DEBUG:
        body["error"] = error
    return JSONResponse(status_code=status_code, content=body)


def filter_params(request: Request, names=FILTER_PARAMS) -> Dict[str, Any]:
    """Collect listing parameters; page/limit stay raw so the filter can clamp them."""
    q = request.query_params
    params: Dict[str, Any] = {name: q[name] for name in names if q.get(name) not in (None, "")}
    lat, lng, radius = q.get("lat"), q.get("lng"), q.get("radius")
    if lat and lng and radius:
        params["near"] = {"lng": lng, "lat": lat, "radiusKm": radius}
    return params


# ------------------ Error handlers ------------------

@app.exception_handler(FixMyAreaError)
async def handle_app_error(request: Request, exc: FixMyAreaError):
    if exc.status_code >= 500:
        log.error("request_failed", code=exc.code, error=exc.message)
    data = None
    if isinstance(exc, ValidationError) and exc.errors != [exc.message]:
        data = {"errors": exc.errors}
    return fail(exc.status_code, exc.message, data=data)


@app.exception_handler(RequestValidationError)
async def handle_request_validation(request: Request, exc: RequestValidationError):
    errors = messages_from_errors(exc.errors())
    return fail(400, "Validation error", data={"errors": errors})


@app.exception_handler(StarletteHTTPException)
async def handle_http_error(request: Request, exc: StarletteHTTPException):
    return fail(exc.status_code, str(exc.detail))


@app.exception_handler(ConnectionFailure)
async def handle_database_down(request: Request, exc: ConnectionFailure):
    log.error("database_unavailable", error=str(exc))
    return fail(503, "Database unavailable, please retry", error=str(exc))


@app.exception_handler(Exception)
async def handle_unexpected(request: Request, exc: Exception):
    log.exception("unhandled_error")
    return fail(500, "Internal server error", error=str(exc))


# --------------- Routes ----------------
@app.get("/")
def root():
    return {"service": config.APP_NAME, "ok": True}


@app.get("/test")
async def test_database(services: Services = Depends(get_services)):
    database = services.database
    response = {
        "backend": "✅ Running",
        "store": database.backend,
        "database": "❌ Not Available",
        "database_url": "✅ Set" if config.DATABASE_URL else "❌ Not Set",
        "database_name": database.name,
        "connection_status": "Not Connected",
        "collections": [],
    }
    if await database.ping():
        response["connection_status"] = "Connected"
        try:
            collections = await database.collection_names()
            response["collections"] = collections[:10]
            response["database"] = "✅ Connected & Working"
        except PyMongoError as e:
            response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
    return response


# Auth
@app.post("/api/auth/send-otp")
async def send_otp(req: SendOtpRequest, services: Services = Depends(get_services)):
    data = await services.auth.send_otp(req)
    return ok(f"OTP sent successfully to {data['email']}", data)


@app.post("/api/auth/verify-otp")
async def verify_otp(req: VerifyOtpRequest, response: Response, services: Services = Depends(get_services)):
    user, token, created = await services.auth.verify_otp(req)
    response.set_cookie(
        config.AUTH_COOKIE_NAME,
        token,
        max_age=config.JWT_EXPIRE_DAYS * 24 * 60 * 60,
        httponly=True,
        secure=config.ENVIRONMENT == "production",
        samesite="lax",
        path="/",
    )
    message = "Account created successfully!" if created else "Login successful!"
    return ok(message, {"user": user, "token": token})


@app.get("/api/auth/me")
async def me(identity: Identity = Depends(require_auth), services: Services = Depends(get_services)):
    user = await services.users.get(identity.id)
    return ok("User retrieved successfully", user)


@app.post("/api/auth/logout")
def logout(response: Response):
    response.delete_cookie(config.AUTH_COOKIE_NAME, path="/")
    return ok("Logged out successfully")


# Issues
@app.get("/api/issues")
async def list_issues(request: Request, services: Services = Depends(get_services)):
    page = await services.queries.search(filter_params(request))
    return ok("Issues retrieved successfully", await services.queries.expand_page(page))


@app.post("/api/issues", status_code=201)
async def create_issue(
    payload: IssueCreate,
    identity: Identity = Depends(require_auth),
    services: Services = Depends(get_services),
):
    issue = await services.issue_service.create(payload, identity)
    return ok("Issue created successfully", await services.queries.expand_one(issue))


@app.get("/api/issues/nearby")
async def nearby_issues(
    lng: float = Query(..., ge=-180, le=180),
    lat: float = Query(..., ge=-90, le=90),
    maxDistance: float = Query(5000, gt=0),
    limit: int = Query(50, ge=1, le=50),
    services: Services = Depends(get_services),
):
    issues = await services.queries.nearby(lng, lat, maxDistance, limit)
    return ok("Nearby issues retrieved successfully", await services.queries.expand(issues))


@app.get("/api/issues/{id}")
async def get_issue(id: str, services: Services = Depends(get_services)):
    issue = await services.issue_service.get(id)
    return ok("Issue retrieved successfully", await services.queries.expand_one(issue))


@app.put("/api/issues/{id}")
async def update_issue(
    id: str,
    patch: Dict[str, Any] = Body(...),
    identity: Identity = Depends(require_auth),
    services: Services = Depends(get_services),
):
    issue = await services.issue_service.update(id, patch, identity)
    return ok("Issue updated successfully", await services.queries.expand_one(issue))


@app.delete("/api/issues/{id}")
async def delete_issue(id: str, identity: Identity = Depends(require_auth), services: Services = Depends(get_services)):
    await services.issue_service.delete(id, identity)
    return ok("Issue deleted successfully")


@app.post("/api/issues/{id}/comments", status_code=201)
async def add_comment(
    id: str,
    req: CommentCreate,
    identity: Identity = Depends(require_auth),
    services: Services = Depends(get_services),
):
    issue = await services.issue_service.add_comment(id, req.text, identity)
    return ok("Comment added successfully", await services.queries.expand_one(issue))


# Votes
@app.post("/api/issues/{id}/vote")
async def toggle_vote(id: str, identity: Identity = Depends(require_auth), services: Services = Depends(get_services)):
    result = await services.votes.toggle(id, identity.id)
    issue = await services.issue_service.get(id)
    data = {**result.public(), "issue": await services.queries.expand_one(issue)}
    return ok(f"Vote {result.action} successfully", data)


@app.get("/api/issues/{id}/vote")
async def vote_status(id: str, identity: Identity = Depends(require_auth), services: Services = Depends(get_services)):
    status = await services.votes.status(id, identity.id)
    return ok("Vote status retrieved successfully", status)


@app.get("/api/users/me/votes")
async def my_votes(
    page: Optional[str] = None,
    limit: Optional[str] = None,
    identity: Identity = Depends(require_auth),
    services: Services = Depends(get_services),
):
    votes = await services.queries.votes_by(identity.id, page or 1, limit)
    return ok("Votes retrieved successfully", votes)


# Stats
@app.get("/api/stats/me")
async def my_stats(identity: Identity = Depends(require_auth), services: Services = Depends(get_services)):
    stats = await services.stats.user_dashboard(identity)
    return ok("Statistics retrieved successfully", stats)


# Admin
@app.get("/api/admin/issues")
async def admin_issues(
    request: Request,
    identity: Identity = Depends(require_admin),
    services: Services = Depends(get_services),
):
    page = await services.queries.search(filter_params(request, ADMIN_FILTER_PARAMS))
    return ok("Issues retrieved successfully", await services.queries.expand_page(page))


@app.get("/api/admin/stats")
async def admin_stats(identity: Identity = Depends(require_admin), services: Services = Depends(get_services)):
    stats = await services.stats.admin_dashboard()
    return ok("Statistics retrieved successfully", stats)


@app.post("/api/admin/issues/{id}/reconcile-votes")
async def reconcile_votes(id: str, identity: Identity = Depends(require_admin), services: Services = Depends(get_services)):
    result = await services.votes.reconcile(id)
    log.info("reconcile_requested", issue_id=id, by=identity.id, changed=result["changed"])
    return ok("Vote count reconciled", result)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
