import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from bson import ObjectId
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .concurrency import CancelToken
from .config import configure_logging, sweep_enabled
from .database import MongoStore
from .errors import CirculationError
from .scheduler import build_scheduler
from .schemas import ItemStatus, LoanStatus, ReservationStatus, ReturnCondition
from .system import LibrarySystem

logger = logging.getLogger(__name__)

_system: Optional[LibrarySystem] = None


def get_system() -> LibrarySystem:
    global _system
    if _system is None:
        _system = LibrarySystem.from_env()
    return _system


def request_deadline() -> CancelToken:
    return CancelToken(timeout=float(os.getenv("REQUEST_TIMEOUT_SECONDS", "30")))


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    scheduler = None
    if sweep_enabled():
        scheduler = build_scheduler(get_system())
        scheduler.start()
        logger.info("notification sweep scheduled")
    yield
    if scheduler is not None:
        scheduler.shutdown()


app = FastAPI(title="Library Circulation API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CirculationError)
def circulation_error_handler(request: Request, exc: CirculationError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail, "code": exc.code})

# ----------------------
# Utility helpers
# ----------------------

def check_id(id_str: str) -> str:
    if not ObjectId.is_valid(id_str):
        raise HTTPException(status_code=400, detail="Invalid ID format")
    return id_str

# ----------------------
# Health
# ----------------------

@app.get("/")
def read_root():
    return {"message": "Library Circulation Backend is running"}

@app.get("/test")
def test_database(system: LibrarySystem = Depends(get_system)):
    response = {
        "backend": "✅ Running",
        "database": "⚠️ In-memory store",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    if isinstance(system.store, MongoStore):
        try:
            response["collections"] = system.store.db.list_collection_names()[:10]
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
        except Exception as e:
            response["database"] = f"⚠️ Connected but Error: {str(e)[:50]}"
    return response

# ----------------------
# Pydantic request models
# ----------------------

class CreateItem(BaseModel):
    title: str
    author: str
    isbn: Optional[str] = None
    category: Optional[str] = None

class ForceStatusRequest(BaseModel):
    status: ItemStatus
    reason: str = Field(..., min_length=1, description="Why staff overrode the status")

class CheckoutRequest(BaseModel):
    item_id: str
    borrower_id: str
    due_date: Optional[datetime] = None

class ReturnRequest(BaseModel):
    condition: ReturnCondition = ReturnCondition.GOOD
    return_date: Optional[datetime] = Field(None, description="Backdated return, defaults to now")

class PaymentRequest(BaseModel):
    amount: float = Field(..., gt=0)

class HoldRequest(BaseModel):
    item_id: str
    borrower_id: str

class SweepRequest(BaseModel):
    now: Optional[datetime] = None
    jobs: Optional[List[str]] = None

# ----------------------
# Items Endpoints
# ----------------------

@app.post("/items", status_code=201)
def create_item(payload: CreateItem, system: LibrarySystem = Depends(get_system)):
    return system.add_item(payload.title, payload.author, payload.isbn, payload.category)

@app.get("/items")
def list_items(status: Optional[ItemStatus] = Query(None), system: LibrarySystem = Depends(get_system)):
    return system.list_items(status)

@app.get("/items/{item_id}")
def get_item(item_id: str, system: LibrarySystem = Depends(get_system)):
    return system.get_item(check_id(item_id))

@app.delete("/items/{item_id}")
def delete_item(item_id: str, system: LibrarySystem = Depends(get_system)):
    system.remove_item(check_id(item_id))
    return {"status": "deleted", "id": item_id}

@app.post("/items/{item_id}/status")
def force_status(item_id: str, payload: ForceStatusRequest, system: LibrarySystem = Depends(get_system)):
    return system.force_status(check_id(item_id), payload.status, payload.reason, request_deadline())

@app.get("/items/{item_id}/queue")
def item_queue(item_id: str, system: LibrarySystem = Depends(get_system)):
    return system.queue_snapshot(check_id(item_id))

# ----------------------
# Loans Endpoints
# ----------------------

@app.get("/loans")
def list_loans(
    borrower_id: Optional[str] = None,
    item_id: Optional[str] = None,
    status: Optional[LoanStatus] = None,
    system: LibrarySystem = Depends(get_system),
):
    return system.list_loans(borrower_id, item_id, status)

@app.get("/loans/{loan_id}")
def get_loan(loan_id: str, system: LibrarySystem = Depends(get_system)):
    loan = system.get_loan(check_id(loan_id))
    return {**loan.model_dump(), "current_fine": system.coordinator.ledger.current_fine(loan, system.clock())}

@app.post("/loans/checkout", status_code=201)
def checkout(payload: CheckoutRequest, system: LibrarySystem = Depends(get_system)):
    return system.checkout(check_id(payload.item_id), payload.borrower_id, payload.due_date, request_deadline())

@app.post("/loans/{loan_id}/return")
def return_item(loan_id: str, payload: ReturnRequest, system: LibrarySystem = Depends(get_system)):
    outcome = system.return_item(check_id(loan_id), payload.condition, payload.return_date, request_deadline())
    return {"loan": outcome.loan, "promoted": outcome.promoted}

@app.post("/loans/{loan_id}/payments")
def record_payment(loan_id: str, payload: PaymentRequest, system: LibrarySystem = Depends(get_system)):
    return system.record_payment(check_id(loan_id), payload.amount)

# ----------------------
# Reservations Endpoints
# ----------------------

@app.get("/reservations")
def list_holds(
    borrower_id: Optional[str] = None,
    item_id: Optional[str] = None,
    status: Optional[ReservationStatus] = None,
    system: LibrarySystem = Depends(get_system),
):
    return system.list_holds(borrower_id, item_id, status)

@app.post("/reservations", status_code=201)
def place_hold(payload: HoldRequest, system: LibrarySystem = Depends(get_system)):
    return system.place_hold(check_id(payload.item_id), payload.borrower_id, request_deadline())

@app.post("/reservations/{reservation_id}/cancel")
def cancel_hold(reservation_id: str, system: LibrarySystem = Depends(get_system)):
    return system.cancel_hold(check_id(reservation_id), request_deadline())

@app.get("/reservations/{reservation_id}/position")
def queue_position(reservation_id: str, system: LibrarySystem = Depends(get_system)):
    return {"id": reservation_id, "position": system.queue_position(check_id(reservation_id))}

# ----------------------
# Sweep & Reports
# ----------------------

@app.post("/sweep")
def run_sweep(payload: Optional[SweepRequest] = None, system: LibrarySystem = Depends(get_system)):
    payload = payload or SweepRequest()
    try:
        return system.run_sweep(payload.now, payload.jobs, request_deadline())
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

@app.get("/reports/inventory")
def inventory_report(system: LibrarySystem = Depends(get_system)):
    return system.reports.inventory()

@app.get("/reports/circulation")
def circulation_report(system: LibrarySystem = Depends(get_system)):
    return system.reports.circulation()

@app.get("/reports/overdue")
def overdue_report(system: LibrarySystem = Depends(get_system)):
    return system.reports.overdue()

@app.get("/reports/stale-pickups")
def stale_pickups_report(system: LibrarySystem = Depends(get_system)):
    return system.reports.stale_pickups()


def run() -> None:
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run("circulation.main:app", host="0.0.0.0", port=port)


if __name__ == "__main__":
    run()
