import logging
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from circulation import dashboard
from circulation import engine as borrowing
from circulation import inventory
from circulation import models
from circulation import policy
from circulation import schemas
from circulation.auth import (
    Principal,
    get_principal,
    member_only,
    staff_only,
    superadmin_only,
)
from circulation.config import LOG_LEVEL, is_development
from circulation.database import engine, get_db
from circulation.exceptions import LibraryError


logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

models.Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="Library Circulation API",
    description="Borrowing, returning and renewing library book copies under a system-wide policy",
    version="1.0.0",
)


@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    """
    Render domain errors raised anywhere below an endpoint.

    The status code travels on the exception class, so endpoints never build
    error responses themselves.
    """
    logger.info("%s %s rejected: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    content = {"message": "Internal Server Error"}
    if is_development():
        content["error"] = str(exc)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=content)


@app.get("/health")
async def health_check():
    """
    Health check endpoint for monitoring and load balancers.

    Returns:
        Simple status message indicating the service is running
    """
    return {"status": "healthy", "service": "library-circulation"}


# ----------------------
# Circulation
# ----------------------


@app.post(
    "/book/borrow",
    response_model=schemas.BorrowResult,
    dependencies=[Depends(staff_only)],
)
def borrow_books(request: schemas.CirculationRequest, db: Session = Depends(get_db)):
    """
    Lend copies to a member (admin or superadmin).

    Responds 200 for every handled outcome, including a rejected batch: the
    body says which copies were borrowed, which ids were invalid and which
    copies were restricted by the re-borrow cool-down.
    """
    return borrowing.borrow(db, request.member_id, request.book_ids)


@app.post(
    "/book/return",
    response_model=schemas.ReturnResult,
    dependencies=[Depends(staff_only)],
)
def return_books(request: schemas.CirculationRequest, db: Session = Depends(get_db)):
    return borrowing.return_loans(db, request.member_id, request.book_ids)


@app.post(
    "/book/renew",
    response_model=schemas.RenewResult,
    dependencies=[Depends(staff_only)],
)
def renew_books(request: schemas.CirculationRequest, db: Session = Depends(get_db)):
    return borrowing.renew(db, request.member_id, request.book_ids)


@app.get(
    "/book/dashboard",
    response_model=schemas.AdminDashboard,
    dependencies=[Depends(staff_only)],
)
def admin_dashboard(db: Session = Depends(get_db)):
    return dashboard.system_dashboard(db)


@app.get(
    "/book/expired",
    response_model=schemas.ExpiredLoansPage,
    dependencies=[Depends(staff_only)],
)
def list_expired_loans(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
):
    return inventory.expired_loans(db, page=page, limit=limit)


@app.get(
    "/book/borrowed",
    response_model=schemas.BorrowedLoansPage,
    dependencies=[Depends(staff_only)],
)
def list_borrowed_loans(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    sort_by: str = Query(
        "borrowedDate", alias="sortBy", pattern="^(borrowedDate|expiryDate|renewalCount)$"
    ),
    sort: str = Query("desc", pattern="^(asc|desc)$"),
    db: Session = Depends(get_db),
):
    return inventory.borrowed_loans(db, page=page, limit=limit, sort_by=sort_by, sort=sort)


# ----------------------
# Inventory
# ----------------------


@app.post(
    "/book/add",
    response_model=schemas.MessageResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(staff_only)],
)
def add_book(book: schemas.BookCreate, db: Session = Depends(get_db)):
    """
    Add a new title with its initial stock.

    Business Logic:
    - one copy row is created per unit of stock
    - all copies share a generated bookCode, returned in the response
    """
    book_code = inventory.add_book(db, book)
    return schemas.MessageResponse(
        message="Books Added Successfully", count=book.stock, book_code=book_code
    )


@app.post(
    "/book/addstock",
    response_model=schemas.MessageResponse,
    dependencies=[Depends(staff_only)],
)
def add_stock(payload: schemas.StockAdd, db: Session = Depends(get_db)):
    added = inventory.add_stock(db, payload.book_code, payload.stock)
    return schemas.MessageResponse(
        message=f"{added} stock added successfully", count=added, book_code=payload.book_code
    )


@app.post(
    "/book/edit",
    response_model=schemas.MessageResponse,
    dependencies=[Depends(staff_only)],
)
def edit_book(book: schemas.BookUpdate, db: Session = Depends(get_db)):
    updated = inventory.edit_book(db, book)
    return schemas.MessageResponse(
        message="Book Edited Successfully", count=updated, book_code=book.book_code
    )


@app.post(
    "/book/deleteall",
    response_model=schemas.MessageResponse,
    dependencies=[Depends(superadmin_only)],
)
def delete_all_copies(payload: schemas.BookDelete, db: Session = Depends(get_db)):
    deleted = inventory.delete_all_copies(db, payload.book_code)
    return schemas.MessageResponse(message="Books Deleted Successfully", count=deleted)


@app.post(
    "/book/delete",
    response_model=schemas.MessageResponse,
    dependencies=[Depends(superadmin_only)],
)
def delete_copies_by_count(
    payload: schemas.BookDeleteByCount, db: Session = Depends(get_db)
):
    deleted = inventory.delete_copies_by_count(db, payload.book_code, payload.count)
    return schemas.MessageResponse(
        message=f"{deleted} Books Deleted Successfully", count=deleted
    )


@app.get(
    "/book/getavailable",
    response_model=List[schemas.GroupedBook],
    dependencies=[Depends(get_principal)],
)
def list_available_books(
    category: Optional[str] = Query(None), db: Session = Depends(get_db)
):
    return inventory.available_books(db, category=category)


# ----------------------
# Members
# ----------------------


@app.post(
    "/members",
    response_model=schemas.Member,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(staff_only)],
)
def create_member(member: schemas.MemberCreate, db: Session = Depends(get_db)):
    return inventory.create_member(db, member)


@app.get("/member/dashboard", response_model=schemas.MemberDashboard)
def my_dashboard(
    principal: Principal = Depends(member_only), db: Session = Depends(get_db)
):
    return dashboard.member_dashboard(db, principal.id)


@app.get("/member/history", response_model=schemas.LoanHistory)
def my_history(
    principal: Principal = Depends(member_only), db: Session = Depends(get_db)
):
    return inventory.member_history(db, principal.id)


# ----------------------
# Policy
# ----------------------


@app.post(
    "/variables",
    response_model=schemas.Policy,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(superadmin_only)],
)
def create_variables(payload: schemas.PolicyWrite, db: Session = Depends(get_db)):
    return policy.create_policy(db, payload)


@app.put(
    "/variables",
    response_model=schemas.Policy,
    dependencies=[Depends(superadmin_only)],
)
def update_variables(payload: schemas.PolicyWrite, db: Session = Depends(get_db)):
    return policy.update_policy(db, payload)


@app.get(
    "/variables",
    response_model=schemas.Policy,
    dependencies=[Depends(get_principal)],
)
def get_variables(db: Session = Depends(get_db)):
    return policy.get_policy(db)


@app.post(
    "/variables/category/remove",
    response_model=schemas.Policy,
    dependencies=[Depends(superadmin_only)],
)
def remove_category(payload: schemas.CategoryRemove, db: Session = Depends(get_db)):
    return policy.remove_category(db, payload.category)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
