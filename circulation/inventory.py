import logging
import math
import uuid
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session, joinedload

from circulation import models
from circulation import schemas
from circulation.exceptions import InventoryError, LibraryError, NotFoundError
from circulation.policy import get_policy


logger = logging.getLogger(__name__)


# ----------------------
# Member directory
# ----------------------


def member_exists(db: Session, member_id: int) -> bool:
    return (
        db.query(models.Member.id).filter(models.Member.id == member_id).first()
        is not None
    )


def require_member(db: Session, member_id: int) -> None:
    if not member_exists(db, member_id):
        raise NotFoundError(
            f"Member with id {member_id} does not exist. Please provide a valid memberId"
        )


def create_member(db: Session, data: schemas.MemberCreate) -> models.Member:
    existing = (
        db.query(models.Member)
        .filter(models.Member.username == data.username)
        .first()
    )
    if existing:
        raise LibraryError(f"Member with username {data.username} already exists")

    member = models.Member(**data.model_dump())
    db.add(member)
    db.commit()
    db.refresh(member)
    return member


# ----------------------
# Copies
# ----------------------


def add_book(db: Session, data: schemas.BookCreate) -> str:
    """
    Add a new title with `stock` copies.

    Business Logic:
    - the same name from the same publisher cannot be added twice
    - the category must be one of the policy categories
    - every copy gets the same freshly generated book_code

    Returns:
        The generated book_code
    """
    duplicate = (
        db.query(models.Copy.id)
        .filter(models.Copy.name == data.name, models.Copy.publisher == data.publisher)
        .first()
    )
    if duplicate:
        raise InventoryError("Book with same name already exists")

    policy = get_policy(db)
    if data.category not in policy.categories:
        raise InventoryError(f"Category {data.category} is not a valid category")

    book_code = str(uuid.uuid4())
    fields = data.model_dump(exclude={"stock"})
    db.add_all(
        [models.Copy(book_code=book_code, **fields) for _ in range(data.stock)]
    )
    db.commit()
    logger.info("Added %d copies of %r as %s", data.stock, data.name, book_code)
    return book_code


def add_stock(db: Session, book_code: str, stock: int) -> int:
    template = (
        db.query(models.Copy).filter(models.Copy.book_code == book_code).first()
    )
    if template is None:
        raise InventoryError("Book does not exist")

    db.add_all(
        [
            models.Copy(
                book_code=book_code,
                name=template.name,
                authors=list(template.authors),
                publisher=template.publisher,
                published_year=template.published_year,
                pages=template.pages,
                cost=template.cost,
                category=template.category,
            )
            for _ in range(stock)
        ]
    )
    db.commit()
    logger.info("Added %d copies to %s", stock, book_code)
    return stock


def edit_book(db: Session, data: schemas.BookUpdate) -> int:
    """
    Rewrite the title metadata on every copy of a bookCode.

    Availability and loans are untouched; only descriptive fields change.

    Returns:
        Number of copies updated
    """
    exists = (
        db.query(models.Copy.id).filter(models.Copy.book_code == data.book_code).first()
    )
    if exists is None:
        raise InventoryError("Book does not exist")

    policy = get_policy(db)
    if data.category not in policy.categories:
        raise InventoryError(f"Category {data.category} is not a valid category")

    fields = data.model_dump(exclude={"book_code"})
    updated = (
        db.query(models.Copy)
        .filter(models.Copy.book_code == data.book_code)
        .update(
            {getattr(models.Copy, key): value for key, value in fields.items()},
            synchronize_session=False,
        )
    )
    db.commit()
    logger.info("Edited %d copies of %s", updated, data.book_code)
    return updated


def delete_all_copies(db: Session, book_code: str) -> int:
    """Delete every copy of a title that is not on loan."""
    deleted = (
        db.query(models.Copy)
        .filter(models.Copy.book_code == book_code, models.Copy.available.is_(True))
        .delete(synchronize_session=False)
    )
    if not deleted:
        db.rollback()
        raise InventoryError(
            "You cannot delete these books as they are assigned to someone."
        )
    db.commit()
    logger.info("Deleted %d copies of %s", deleted, book_code)
    return deleted


def delete_copies_by_count(db: Session, book_code: str, count: int) -> int:
    ids = [
        row.id
        for row in db.query(models.Copy.id)
        .filter(models.Copy.book_code == book_code, models.Copy.available.is_(True))
        .limit(count)
        .all()
    ]
    if count > len(ids):
        raise InventoryError(
            f"There are only {len(ids)} books available in the library"
        )

    # available is re-checked so a copy borrowed in the meantime is never removed
    deleted = (
        db.query(models.Copy)
        .filter(models.Copy.id.in_(ids), models.Copy.available.is_(True))
        .delete(synchronize_session=False)
    )
    if deleted != count:
        db.rollback()
        raise InventoryError("Some copies were borrowed meanwhile; nothing was deleted")
    db.commit()
    logger.info("Deleted %d copies of %s", deleted, book_code)
    return deleted


def group_books(copies: Iterable[models.Copy]) -> List[schemas.GroupedBook]:
    """
    Collapse copies into one entry per book_code.

    The first copy seen for a code represents the title; total_count and
    available_count are counted over all copies passed in.
    """
    grouped: Dict[str, schemas.GroupedBook] = {}
    for copy in copies:
        entry = grouped.get(copy.book_code)
        if entry is None:
            entry = schemas.GroupedBook(
                **schemas.Copy.model_validate(copy).model_dump(),
                total_count=0,
                available_count=0,
            )
            grouped[copy.book_code] = entry
        entry.total_count += 1
        if copy.available:
            entry.available_count += 1
    return list(grouped.values())


def available_books(db: Session, category: Optional[str] = None) -> List[schemas.GroupedBook]:
    query = db.query(models.Copy).filter(models.Copy.available.is_(True))
    if category:
        query = query.filter(models.Copy.category == category.strip().upper())
    return group_books(query.order_by(models.Copy.name, models.Copy.id).all())


# ----------------------
# Loan ledger
# ----------------------


def loan_view(loan: models.Loan, with_member: bool = False) -> schemas.Loan:
    view = schemas.Loan.model_validate(loan)
    if with_member and loan.member is not None:
        view.member_name = loan.member.name
    return view


def active_loan_count(db: Session, member_id: int) -> int:
    return (
        db.query(func.count(models.Loan.id))
        .filter(models.Loan.member_id == member_id, models.Loan.returned.is_(False))
        .scalar()
    )


LOAN_SORT_COLUMNS = {
    "borrowedDate": models.Loan.borrowed_date,
    "expiryDate": models.Loan.expiry_date,
    "renewalCount": models.Loan.renewal_count,
}


def _loan_page(query, page: int, limit: int, order):
    """
    Slice a loan query into one page.

    page is clamped into the valid range so an out-of-range page returns the
    last page instead of an empty one.
    """
    total_count = query.count()
    total_pages = math.ceil(total_count / limit)
    current_page = max(1, min(page, total_pages or 1))

    loans = (
        query.order_by(*order)
        .offset((current_page - 1) * limit)
        .limit(limit)
        .all()
    )
    pagination = schemas.Pagination(
        total_count=total_count,
        total_pages=total_pages,
        current_page=current_page,
        has_next_page=current_page < total_pages,
        has_prev_page=current_page > 1,
    )
    return [loan_view(loan, with_member=True) for loan in loans], pagination


def _active_loans_query(db: Session):
    return (
        db.query(models.Loan)
        .options(joinedload(models.Loan.book), joinedload(models.Loan.member))
        .filter(models.Loan.returned.is_(False))
    )


def expired_loans(
    db: Session, page: int = 1, limit: int = 10, now: Optional[datetime] = None
) -> schemas.ExpiredLoansPage:
    """List unreturned loans past their expiry date, newest borrow first."""
    now = now or datetime.now()
    query = _active_loans_query(db).filter(models.Loan.expiry_date <= now)
    loans, pagination = _loan_page(
        query, page, limit, (models.Loan.borrowed_date.desc(), models.Loan.id.desc())
    )
    return schemas.ExpiredLoansPage(
        message="Successfully fetched expired books",
        expired_books=loans,
        pagination=pagination,
    )


def borrowed_loans(
    db: Session,
    page: int = 1,
    limit: int = 10,
    sort_by: str = "borrowedDate",
    sort: str = "desc",
    now: Optional[datetime] = None,
) -> schemas.BorrowedLoansPage:
    """
    List loans that are out and not yet expired, across all members.

    sort_by is one of LOAN_SORT_COLUMNS; ties are broken by loan id in the
    same direction.
    """
    now = now or datetime.now()
    column = LOAN_SORT_COLUMNS[sort_by]
    if sort == "asc":
        order = (column.asc(), models.Loan.id.asc())
    else:
        order = (column.desc(), models.Loan.id.desc())

    query = _active_loans_query(db).filter(models.Loan.expiry_date > now)
    loans, pagination = _loan_page(query, page, limit, order)
    return schemas.BorrowedLoansPage(
        message="Success",
        borrowed_books=loans,
        pagination=pagination,
    )


def member_history(db: Session, member_id: int) -> schemas.LoanHistory:
    loans = (
        db.query(models.Loan)
        .options(joinedload(models.Loan.book))
        .filter(models.Loan.member_id == member_id, models.Loan.returned.is_(True))
        .order_by(models.Loan.borrowed_date.desc(), models.Loan.id.desc())
        .all()
    )
    return schemas.LoanHistory(
        message="History Fetched Successfully",
        history_books=[loan_view(loan) for loan in loans],
    )
