import os
from datetime import datetime
from decimal import Decimal
from functools import lru_cache
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from errors import CirculationError
from schemas import (
    DEFAULT_SCHOOL,
    Book as BookSchema,
    BookStatus,
    Fine as FineSchema,
    Member as MemberSchema,
    MemberPrivileges,
    MemberStatus,
    Reservation as ReservationSchema,
    ReturnCondition,
    Review as ReviewSchema,
    Transaction as TransactionSchema,
)
from service import LibraryService

app = FastAPI(title="Library Circulation API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

STATUS_CODES = {
    "not_found": 404,
    "invalid_state": 400,
    "policy_denied": 403,
    "conflict": 409,
    "upstream_unavailable": 503,
}


@lru_cache(maxsize=1)
def get_service() -> LibraryService:
    return LibraryService.from_env()


@app.exception_handler(CirculationError)
async def circulation_error_handler(request: Request, exc: CirculationError):
    return JSONResponse(status_code=STATUS_CODES.get(exc.kind, 400), content=exc.to_dict())


# ----------------------
# Health & Schema
# ----------------------

@app.get("/")
def read_root():
    return {"message": "Library Circulation Backend is running"}

@app.get("/schema")
def get_schema():
    # Return JSON schema-like description for viewer tools
    return {
        "book": BookSchema.model_json_schema(),
        "member": MemberSchema.model_json_schema(),
        "transaction": TransactionSchema.model_json_schema(),
        "reservation": ReservationSchema.model_json_schema(),
        "fine": FineSchema.model_json_schema(),
        "review": ReviewSchema.model_json_schema(),
    }

# ----------------------
# Pydantic request models
# ----------------------

class CreateBook(BaseModel):
    title: str
    author: str
    isbn: Optional[str] = None
    category: str = "general"
    school_id: str = DEFAULT_SCHOOL
    is_reference_only: bool = False
    is_digital: bool = False
    restricted_to_classes: List[str] = Field(default_factory=list)
    loan_period_days: Optional[int] = Field(None, ge=1)
    late_fee_per_day: Optional[Decimal] = Field(None, ge=0)
    replacement_cost: Decimal = Field(Decimal("0.00"), ge=0)
    max_renewals: int = Field(2, ge=0)

class CreateMember(BaseModel):
    school_id: str = DEFAULT_SCHOOL
    user_id: Optional[str] = None
    class_id: Optional[str] = None
    membership_end_date: Optional[datetime] = None
    privileges: MemberPrivileges = Field(default_factory=MemberPrivileges)

class StatusUpdate(BaseModel):
    status: BookStatus

class RatingRequest(BaseModel):
    member_id: str
    rating: int = Field(..., ge=1, le=5)

class CheckoutRequest(BaseModel):
    book_id: str
    member_id: str
    issued_by: Optional[str] = None
    is_digital: bool = False

class ReturnRequest(BaseModel):
    book_id: str
    member_id: str
    returned_by: Optional[str] = None
    return_condition: ReturnCondition = ReturnCondition.GOOD
    notes: Optional[str] = Field(None, max_length=500)

class RenewRequest(BaseModel):
    book_id: str
    member_id: str

class ReserveRequest(BaseModel):
    book_id: str
    member_id: str

class PaymentRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)

class WaiverRequest(BaseModel):
    reason: str
    waived_by: Optional[str] = None

# ----------------------
# Books Endpoints
# ----------------------

@app.post("/books", status_code=201, response_model=BookSchema)
def create_book(book: CreateBook, service: LibraryService = Depends(get_service)):
    fields = book.model_dump(exclude_none=True)
    return service.add_book(fields.pop("title"), fields.pop("author"), **fields)

@app.get("/books", response_model=List[BookSchema])
def list_books(
    q: Optional[str] = Query(None, description="Search query"),
    category: Optional[str] = None,
    status: Optional[BookStatus] = None,
    school_id: Optional[str] = None,
    service: LibraryService = Depends(get_service),
):
    return service.list_books(school_id=school_id, status=status, query=q, category=category)

@app.get("/books/{book_id}", response_model=BookSchema)
def get_book(book_id: str, service: LibraryService = Depends(get_service)):
    return service.get_book(book_id)

@app.patch("/books/{book_id}/status", response_model=BookSchema)
def set_book_status(book_id: str, payload: StatusUpdate, service: LibraryService = Depends(get_service)):
    return service.set_book_status(book_id, payload.status)

@app.post("/books/{book_id}/ratings", status_code=201, response_model=ReviewSchema)
def rate_book(book_id: str, payload: RatingRequest, service: LibraryService = Depends(get_service)):
    return service.rate_book(book_id, payload.member_id, payload.rating)

# ----------------------
# Members Endpoints
# ----------------------

@app.post("/members", status_code=201, response_model=MemberSchema)
def create_member(member: CreateMember, service: LibraryService = Depends(get_service)):
    return service.add_member(**member.model_dump(exclude_none=True))

@app.get("/members", response_model=List[MemberSchema])
def list_members(
    school_id: Optional[str] = None,
    status: Optional[MemberStatus] = None,
    service: LibraryService = Depends(get_service),
):
    return service.list_members(school_id, status)

@app.get("/members/{member_id}", response_model=MemberSchema)
def get_member(member_id: str, service: LibraryService = Depends(get_service)):
    return service.get_member(member_id)

@app.put("/members/{member_id}/privileges", response_model=MemberSchema)
def update_privileges(member_id: str, payload: MemberPrivileges, service: LibraryService = Depends(get_service)):
    return service.update_privileges(member_id, payload)

@app.get("/members/{member_id}/transactions", response_model=List[TransactionSchema])
def member_transactions(
    member_id: str,
    open_only: bool = False,
    service: LibraryService = Depends(get_service),
):
    service.get_member(member_id)
    return service.member_transactions(member_id, open_only)

@app.get("/members/{member_id}/fines", response_model=List[FineSchema])
def member_fines(
    member_id: str,
    pending_only: bool = False,
    service: LibraryService = Depends(get_service),
):
    service.get_member(member_id)
    return service.member_fines(member_id, pending_only)

# ----------------------
# Circulation Endpoints
# ----------------------

@app.post("/circulation/checkout", status_code=201, response_model=TransactionSchema)
def checkout_book(payload: CheckoutRequest, service: LibraryService = Depends(get_service)):
    return service.checkout(payload.book_id, payload.member_id, payload.issued_by, payload.is_digital)

@app.post("/circulation/return", response_model=TransactionSchema)
def return_book(payload: ReturnRequest, service: LibraryService = Depends(get_service)):
    return service.return_book(
        payload.book_id,
        payload.member_id,
        payload.returned_by,
        payload.return_condition,
        payload.notes,
    )

@app.post("/circulation/renew", response_model=TransactionSchema)
def renew_book(payload: RenewRequest, service: LibraryService = Depends(get_service)):
    return service.renew(payload.book_id, payload.member_id)

@app.post("/circulation/reserve", status_code=201, response_model=ReservationSchema)
def reserve_book(payload: ReserveRequest, service: LibraryService = Depends(get_service)):
    return service.reserve(payload.book_id, payload.member_id)

@app.delete("/reservations/{reservation_id}", response_model=ReservationSchema)
def cancel_reservation(reservation_id: str, service: LibraryService = Depends(get_service)):
    return service.cancel_reservation(reservation_id)

@app.get("/books/{book_id}/queue", response_model=List[ReservationSchema])
def book_queue(book_id: str, service: LibraryService = Depends(get_service)):
    return service.reservation_queue(book_id)

# ----------------------
# Fines Endpoints
# ----------------------

@app.post("/fines/{fine_id}/pay", response_model=FineSchema)
def pay_fine(fine_id: str, payload: PaymentRequest, service: LibraryService = Depends(get_service)):
    return service.pay_fine(fine_id, payload.amount)

@app.post("/fines/{fine_id}/waive", response_model=FineSchema)
def waive_fine(fine_id: str, payload: WaiverRequest, service: LibraryService = Depends(get_service)):
    return service.waive_fine(fine_id, payload.reason, payload.waived_by)

# ----------------------
# Reporting Endpoints
# ----------------------

@app.get("/members/{member_id}/recommendations", response_model=List[BookSchema])
def recommendations(
    member_id: str,
    limit: int = Query(10, ge=1, le=100),
    service: LibraryService = Depends(get_service),
):
    return service.recommend(member_id, limit)

@app.get("/statistics")
def statistics(
    school_id: str = Query(DEFAULT_SCHOOL, description="School scope"),
    service: LibraryService = Depends(get_service),
):
    return service.statistics(school_id)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
