import logging
from contextlib import asynccontextmanager
from datetime import date as date_cls
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request, WebSocket, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pymongo.errors import PyMongoError
from starlette.concurrency import run_in_threadpool

import config
import database
import errors
from auth import AuthService, get_auth_service, get_current_user, require_role, rooms_for
from collector import CollectorService
from events import EventBus, NotificationHub
from expenses import ExpenseService
from lifecycle import RequestLifecycle
from schedules import ScheduleService
from schemas import (ActiveToggle, BulkRequestCreate, CollectorProfileCreate, CollectorProfileUpdate,
                     ExpenseCreate, ExpenseUpdate, LocationUpdate, LoginRequest, RatingRequest, RegisterRequest,
                     RequestCreate, ScheduledPickupCreate, StatusUpdate, WasteTipCreate)
from tips import TipService

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("waste_api")


# ------------------ Lifecycle ------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    db = database.db
    if db is None:
        raise RuntimeError("DATABASE_URL and DATABASE_NAME must be set")
    await run_in_threadpool(database.ensure_indexes, db)

    bus = EventBus()
    hub = NotificationHub(bus)
    hub.start()
    requests = RequestLifecycle(db, "regular", bus)
    bulk_requests = RequestLifecycle(db, "bulk", bus)
    collectors = CollectorService(db, [requests, bulk_requests], bus)
    collectors.subscribe()

    app.state.db = db
    app.state.bus = bus
    app.state.hub = hub
    app.state.auth = AuthService(db)
    app.state.requests = requests
    app.state.bulk_requests = bulk_requests
    app.state.collectors = collectors
    app.state.expenses = ExpenseService(db, bus)
    app.state.schedules = ScheduleService(db)
    app.state.tips = TipService(db)
    logger.info("Waste Collection API started (env=%s, db=%s)", config.APP_ENV, db.name)
    try:
        yield
    finally:
        collectors.close()
        await hub.stop()
        logger.info("Waste Collection API stopped")


app = FastAPI(title="Waste Collection API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in config.FRONTEND_URL.split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ------------------ Error handling ------------------
@app.exception_handler(errors.AppError)
async def app_error_handler(request: Request, exc: errors.AppError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.payload())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    fields = sorted({str(e["loc"][-1]) for e in exc.errors() if e.get("loc")})
    return await app_error_handler(request, errors.ValidationError("Invalid or missing fields", fields=fields))


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.exception("Database error on %s %s", request.method, request.url.path)
    return await app_error_handler(request, errors.InfrastructureError())


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    content = {"success": False, "message": "Internal server error"}
    if config.is_development():
        content["error"] = str(exc)
    return JSONResponse(status_code=500, content=content)


def ok(data=None, message: Optional[str] = None):
    body = {"success": True, "data": data}
    if message:
        body["message"] = message
    return body


# ------------------ Public & Utility ------------------
@app.get("/")
def read_root():
    return {"message": "Waste Collection Backend Running"}


@app.get("/test")
def test_database(request: Request):
    try:
        collections = request.app.state.db.list_collection_names()
        return {
            "backend": "✅ Running",
            "database": "✅ Connected",
            "collections": collections[:10],
            "sockets": request.app.state.hub.session_count,
        }
    except PyMongoError as e:
        return {"backend": "✅ Running", "database": f"❌ {str(e)[:80]}"}


api = APIRouter(prefix=config.API_PREFIX)


# ------------------ Auth ------------------
@api.post("/auth/register", status_code=status.HTTP_201_CREATED)
def register(body: RegisterRequest, auth: AuthService = Depends(get_auth_service)):
    return ok(auth.register(body), "Registration successful")


@api.post("/auth/login")
def login(body: LoginRequest, auth: AuthService = Depends(get_auth_service)):
    return ok(auth.login(body.email, body.password), "Login successful")


@api.get("/auth/me")
def me(user=Depends(get_current_user), auth: AuthService = Depends(get_auth_service)):
    return ok(auth.get_account(user))


# ------------------ Waste requests (residents & businesses) ------------------
@api.post("/waste-requests", status_code=status.HTTP_201_CREATED)
def create_waste_request(body: RequestCreate, request: Request,
                         user=Depends(require_role("resident", "business"))):
    return ok(request.app.state.requests.create(user, body), "Waste request created")


@api.get("/waste-requests")
def list_waste_requests(request: Request, user=Depends(require_role("resident", "business"))):
    return ok(request.app.state.requests.list_by_owner(user))


@api.get("/waste-requests/status-counts")
def waste_request_status_counts(request: Request, user=Depends(require_role("resident", "business"))):
    return ok(request.app.state.requests.status_counts(user))


@api.get("/waste-requests/{request_id}")
def get_waste_request(request_id: str, request: Request, user=Depends(require_role("resident", "business"))):
    return ok(request.app.state.requests.get_by_id(user, request_id))


@api.patch("/waste-requests/{request_id}/status")
def update_waste_request_status(request_id: str, body: StatusUpdate, request: Request,
                                user=Depends(require_role("resident", "business", "collector"))):
    record = request.app.state.requests.transition(user, request_id, body.status, earnings=body.earnings)
    return ok(record, "Status updated")


@api.put("/waste-requests/{request_id}/cancel")
def cancel_waste_request(request_id: str, request: Request, user=Depends(require_role("resident", "business"))):
    return ok(request.app.state.requests.cancel(user, request_id), "Waste request cancelled")


@api.post("/waste-requests/{request_id}/rating")
def rate_waste_request(request_id: str, body: RatingRequest, request: Request,
                       user=Depends(require_role("resident", "business"))):
    return ok(request.app.state.requests.rate(user, request_id, body), "Thanks for your feedback")


# ------------------ Business: bulk requests ------------------
@api.post("/business/bulk-requests", status_code=status.HTTP_201_CREATED)
def create_bulk_request(body: BulkRequestCreate, request: Request, user=Depends(require_role("business"))):
    return ok(request.app.state.bulk_requests.create(user, body), "Bulk request created")


@api.get("/business/bulk-requests")
def list_bulk_requests(request: Request, user=Depends(require_role("business"))):
    return ok(request.app.state.bulk_requests.list_by_owner(user))


@api.get("/business/bulk-requests/status-counts")
def bulk_request_status_counts(request: Request, user=Depends(require_role("business"))):
    return ok(request.app.state.bulk_requests.status_counts(user))


@api.get("/business/bulk-requests/{request_id}")
def get_bulk_request(request_id: str, request: Request, user=Depends(require_role("business"))):
    return ok(request.app.state.bulk_requests.get_by_id(user, request_id))


@api.put("/business/bulk-requests/{request_id}/cancel")
def cancel_bulk_request(request_id: str, request: Request, user=Depends(require_role("business"))):
    return ok(request.app.state.bulk_requests.cancel(user, request_id), "Bulk request cancelled")


# ------------------ Business: scheduled pickups ------------------
@api.post("/business/scheduled-pickups", status_code=status.HTTP_201_CREATED)
def create_scheduled_pickup(body: ScheduledPickupCreate, request: Request, user=Depends(require_role("business"))):
    return ok(request.app.state.schedules.create(user, body), "Scheduled pickup created")


@api.get("/business/scheduled-pickups")
def list_scheduled_pickups(request: Request, user=Depends(require_role("business"))):
    return ok(request.app.state.schedules.list(user))


@api.patch("/business/scheduled-pickups/{schedule_id}/active")
def toggle_scheduled_pickup(schedule_id: str, body: ActiveToggle, request: Request,
                            user=Depends(require_role("business"))):
    return ok(request.app.state.schedules.set_active(user, schedule_id, body))


# ------------------ Business: expenses ------------------
@api.get("/expenses")
def list_expenses(request: Request, start_date: Optional[date_cls] = None, end_date: Optional[date_cls] = None,
                  user=Depends(require_role("business"))):
    return ok(request.app.state.expenses.list(user, start_date, end_date))


@api.post("/expenses", status_code=status.HTTP_201_CREATED)
def create_expense(body: ExpenseCreate, request: Request, user=Depends(require_role("business"))):
    return ok(request.app.state.expenses.create(user, body), "Expense recorded")


@api.get("/expenses/analytics")
def expense_analytics(request: Request, start_date: Optional[date_cls] = None, end_date: Optional[date_cls] = None,
                      user=Depends(require_role("business"))):
    return ok(request.app.state.expenses.analytics(user, start_date, end_date))


@api.get("/expenses/{expense_id}")
def get_expense(expense_id: str, request: Request, user=Depends(require_role("business"))):
    return ok(request.app.state.expenses.get(user, expense_id))


@api.put("/expenses/{expense_id}")
def update_expense(expense_id: str, body: ExpenseUpdate, request: Request, user=Depends(require_role("business"))):
    return ok(request.app.state.expenses.update(user, expense_id, body), "Expense updated")


@api.delete("/expenses/{expense_id}")
def delete_expense(expense_id: str, request: Request, user=Depends(require_role("business"))):
    request.app.state.expenses.delete(user, expense_id)
    return ok(message="Expense deleted")


# ------------------ Collector ------------------
@api.post("/collector/profile", status_code=status.HTTP_201_CREATED)
def create_collector_profile(body: CollectorProfileCreate, request: Request, user=Depends(get_current_user)):
    # the profile does not exist yet, so the usual collector guard cannot apply
    if user.role != "collector":
        raise errors.Forbidden("Insufficient permissions")
    return ok(request.app.state.collectors.create_profile(user.id, body), "Collector profile created")


@api.get("/collector/profile")
def get_collector_profile(request: Request, user=Depends(require_role("collector"))):
    return ok(request.app.state.collectors.get_profile(user.id))


@api.put("/collector/profile")
def update_collector_profile(body: CollectorProfileUpdate, request: Request, user=Depends(require_role("collector"))):
    return ok(request.app.state.collectors.update_profile(user, body), "Profile updated")


@api.get("/collector/assigned-requests")
def collector_assigned_requests(request: Request, user=Depends(require_role("collector"))):
    return ok(request.app.state.collectors.assigned_requests(user))


@api.get("/collector/available-requests")
def collector_available_requests(request: Request, user=Depends(require_role("collector"))):
    return ok(request.app.state.collectors.available_requests())


@api.get("/collector/routes")
def collector_routes(request: Request, user=Depends(require_role("collector"))):
    return ok(request.app.state.collectors.routes(user))


@api.get("/collector/history")
def collector_history(request: Request, page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                      user=Depends(require_role("collector"))):
    return ok(request.app.state.collectors.history(user, page, limit))


@api.put("/collector/location")
def update_collector_location(body: LocationUpdate, request: Request, user=Depends(require_role("collector"))):
    return ok(request.app.state.collectors.update_location(user, body), "Location updated")


@api.patch("/collector/requests/{request_id}/status")
def collector_update_status(request_id: str, body: StatusUpdate, request: Request,
                            user=Depends(require_role("collector"))):
    record = request.app.state.collectors.transition(user, request_id, body.status, earnings=body.earnings)
    return ok(record, "Status updated")


@api.get("/collector/analytics")
def collector_analytics(request: Request, timeframe: str = Query("month", pattern="^(week|month)$"),
                        user=Depends(require_role("collector"))):
    return ok(request.app.state.collectors.performance(user, timeframe))


@api.get("/collector/analytics/export")
def collector_analytics_export(request: Request, timeframe: str = Query("month", pattern="^(week|month)$"),
                               user=Depends(require_role("collector"))):
    content = request.app.state.collectors.export(user, timeframe)
    filename = f"collector-analytics-{timeframe}-{database.now().date().isoformat()}.csv"
    return Response(content=content, media_type="text/csv",
                    headers={"Content-Disposition": f'attachment; filename="{filename}"'})


# ------------------ Waste tips ------------------
@api.get("/waste-tips")
def list_waste_tips(request: Request):
    return ok(request.app.state.tips.grouped())


@api.post("/waste-tips", status_code=status.HTTP_201_CREATED)
def create_waste_tip(body: WasteTipCreate, request: Request, user=Depends(get_current_user)):
    return ok(request.app.state.tips.create(user, body), "Tip added")


app.include_router(api)


# ------------------ Real-time notifications ------------------
@app.websocket("/ws")
async def notifications(websocket: WebSocket, token: Optional[str] = None):
    header = websocket.headers.get("authorization", "")
    if not token and header.lower().startswith("bearer "):
        token = header[7:].strip()
    auth: AuthService = websocket.app.state.auth
    try:
        identity = await run_in_threadpool(auth.authenticate, token)
    except errors.AuthError as exc:
        logger.info("Rejected socket: %s", exc.message)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    await websocket.app.state.hub.serve(websocket, rooms_for(identity))


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
