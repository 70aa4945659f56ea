"""
Borrowing engine: borrow, return and renew copies for a member.

Every write is a short unit of work on the caller's session. Availability is
guarded with conditional UPDATE statements whose row counts tell us whether
we won or lost a race against a concurrent request; no locks are held and
nothing is cached between calls.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from circulation import models
from circulation import schemas
from circulation.exceptions import NothingToProcessError, ReturnAbortedError
from circulation.inventory import active_loan_count, require_member
from circulation.policy import get_policy
from circulation.schemas import ItemOutcome, ItemStatus


logger = logging.getLogger(__name__)


def _dedupe(ids: List[int]) -> List[int]:
    return list(dict.fromkeys(ids))


def _title(loan: models.Loan) -> Optional[str]:
    return loan.book.name if loan.book is not None else None


def renewed_expiry(current_expiry: datetime, now: datetime, expiry_days: int) -> datetime:
    """
    Expiry date after a renewal.

    A renewal restarts the full loan duration from now. It never moves the
    date backwards, which can only happen if the policy duration was
    shortened after the loan was made.
    """
    return max(now + timedelta(days=expiry_days), current_expiry)


def _recently_returned_ids(
    db: Session, member_id: int, copy_ids: List[int], since: datetime
) -> Set[int]:
    rows = (
        db.query(models.Loan.copy_id)
        .filter(
            models.Loan.member_id == member_id,
            models.Loan.copy_id.in_(copy_ids),
            models.Loan.returned.is_(True),
            models.Loan.returned_date >= since,
        )
        .all()
    )
    return {row.copy_id for row in rows}


def borrow(
    db: Session, member_id: int, copy_ids: List[int], now: Optional[datetime] = None
) -> schemas.BorrowResult:
    """
    Lend copies to a member.

    Business Logic:
    1. The whole request is rejected if it would take the member past
       max_borrow_limit active loans
    2. Ids that do not exist or are on loan are reported as invalid
    3. Copies this member returned within the cool-down window are restricted
    4. Each remaining copy is lent in its own unit of work

    Internal Working:
    - The copy is flipped to unavailable with UPDATE ... WHERE available,
      then the loan row is inserted and both commit together
    - A zero row count means another request took the copy first; the copy is
      left out of borrowed_books and nothing is written for it
    - The partial unique index on active loans raises IntegrityError for the
      same race on databases that let both updates through; handled the same way

    Raises:
        NotFoundError: if the member does not exist
        PolicyNotConfiguredError: if no policy row exists
    """
    now = now or datetime.now()
    copy_ids = _dedupe(copy_ids)

    require_member(db, member_id)
    policy = get_policy(db)

    borrowed_count = active_loan_count(db, member_id)
    remaining = policy.max_borrow_limit - borrowed_count
    if len(copy_ids) > remaining:
        logger.info(
            "Borrow limit exceeded for member %s: %d active, %d requested",
            member_id,
            borrowed_count,
            len(copy_ids),
        )
        return schemas.BorrowResult(
            message=(
                f"Limit Exceeded. The member has borrowed {borrowed_count} books. "
                f"Remaining Borrow Limit: {max(remaining, 0)}"
            ),
            borrowed_count=borrowed_count,
            remaining_limit=max(remaining, 0),
        )

    candidates = (
        db.query(models.Copy)
        .filter(models.Copy.id.in_(copy_ids), models.Copy.available.is_(True))
        .all()
    )
    found = {copy.id: copy for copy in candidates}
    invalid_ids = [copy_id for copy_id in copy_ids if copy_id not in found]

    since = now - timedelta(days=policy.consecutive_borrow_limit_days)
    cooling_down = _recently_returned_ids(db, member_id, list(found), since)

    allowed = []
    restricted = []
    for copy_id in copy_ids:
        copy = found.get(copy_id)
        if copy is None:
            continue
        if copy_id in cooling_down:
            restricted.append(
                ItemOutcome(
                    copy_id=copy_id,
                    book_name=copy.name,
                    status=ItemStatus.RESTRICTED,
                    message=(
                        "Book was returned within the last "
                        f"{policy.consecutive_borrow_limit_days} days"
                    ),
                )
            )
        else:
            allowed.append(copy)

    if not allowed:
        logger.debug(
            "Nothing to borrow for member %s: invalid=%s restricted=%s",
            member_id,
            invalid_ids,
            [item.copy_id for item in restricted],
        )
        return schemas.BorrowResult(
            message=(
                "You cannot borrow these books as they are unavailable or were "
                "returned too recently."
            ),
            invalid_books_ids=invalid_ids,
            restricted_books=restricted,
            borrowed_count=borrowed_count,
            remaining_limit=remaining,
        )

    expiry_date = now + timedelta(days=policy.expiry_date_days)
    # plain values; the ORM objects are expired by the per-copy commits below
    pending = [(copy.id, copy.name) for copy in allowed]
    borrowed = []
    for copy_id, book_name in pending:
        loan = _lend_copy(db, member_id, copy_id, now, expiry_date)
        if loan is None:
            logger.warning(
                "Copy %s was borrowed by another request before member %s",
                copy_id,
                member_id,
            )
            continue
        borrowed.append(
            ItemOutcome(
                copy_id=copy_id,
                book_name=book_name,
                status=ItemStatus.BORROWED,
                message="Book borrowed successfully",
                loan_id=loan.id,
                expiry_date=loan.expiry_date,
                renewal_count=0,
            )
        )

    logger.info(
        "Member %s borrowed %d of %d requested copies",
        member_id,
        len(borrowed),
        len(copy_ids),
    )
    return schemas.BorrowResult(
        message="Books Borrowed Successfully" if borrowed else "No books were borrowed",
        borrowed_books=borrowed,
        invalid_books_ids=invalid_ids,
        restricted_books=restricted,
        borrowed_count=borrowed_count + len(borrowed),
        remaining_limit=remaining - len(borrowed),
    )


def _lend_copy(
    db: Session,
    member_id: int,
    copy_id: int,
    now: datetime,
    expiry_date: datetime,
) -> Optional[models.Loan]:
    """Mark one copy unavailable and record its loan; None if the copy was lost."""
    try:
        claimed = db.execute(
            update(models.Copy)
            .where(models.Copy.id == copy_id, models.Copy.available.is_(True))
            .values(available=False)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount == 0:
            db.rollback()
            return None

        loan = models.Loan(
            copy_id=copy_id,
            member_id=member_id,
            borrowed_date=now,
            expiry_date=expiry_date,
            returned=False,
            renewal_count=0,
        )
        db.add(loan)
        db.commit()
    except IntegrityError:
        db.rollback()
        return None
    except Exception:
        db.rollback()
        raise

    db.refresh(loan)
    return loan


def return_loans(
    db: Session, member_id: int, copy_ids: List[int], now: Optional[datetime] = None
) -> schemas.ReturnResult:
    """
    Return copies a member currently holds.

    Unlike borrow, the batch is all-or-nothing: the matched loans are closed
    and their copies made available in one transaction. Ids without an active
    loan for this member are ignored; if none match, nothing is returned.

    Raises:
        NotFoundError: if the member does not exist
        NothingToProcessError: if no active loan matches
        ReturnAbortedError: if either update matched no rows (rolled back)
    """
    now = now or datetime.now()
    copy_ids = _dedupe(copy_ids)

    require_member(db, member_id)

    loans = (
        db.query(models.Loan)
        .options(joinedload(models.Loan.book))
        .filter(
            models.Loan.member_id == member_id,
            models.Loan.copy_id.in_(copy_ids),
            models.Loan.returned.is_(False),
        )
        .all()
    )
    if not loans:
        raise NothingToProcessError(
            "The member has not borrowed books with provided ids."
        )

    loan_ids = [loan.id for loan in loans]
    matched = {loan.copy_id: _title(loan) for loan in loans}

    try:
        closed = db.execute(
            update(models.Loan)
            .where(models.Loan.id.in_(loan_ids), models.Loan.returned.is_(False))
            .values(returned=True, returned_date=now, renewal_count=0)
            .execution_options(synchronize_session=False)
        )
        if closed.rowcount != len(loan_ids):
            raise ReturnAbortedError(
                "Some of these loans were returned by another request. No changes were applied."
            )

        released = db.execute(
            update(models.Copy)
            .where(models.Copy.id.in_(list(matched)))
            .values(available=True)
            .execution_options(synchronize_session=False)
        )
        if released.rowcount == 0:
            raise ReturnAbortedError(
                "Error while returning books. No changes were applied."
            )
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info("Member %s returned copies %s", member_id, list(matched))
    return schemas.ReturnResult(
        message="Books returned successfully.",
        returned_count=len(matched),
        returned_books=[
            ItemOutcome(
                copy_id=copy_id,
                book_name=book_name,
                status=ItemStatus.RETURNED,
                message="Book returned successfully",
            )
            for copy_id, book_name in matched.items()
        ],
    )


def renew(
    db: Session, member_id: int, copy_ids: List[int], now: Optional[datetime] = None
) -> schemas.RenewResult:
    """
    Renew active loans for a member.

    Business Logic:
    - loans at max_renewal_limit are reported in invalid_renewal_books
    - every other loan gets expiry = now + expiry_date_days (see renewed_expiry)
      and renewal_count + 1, each in its own update
    - renewal is allowed at any time; it is not limited to loans near expiry

    The update re-checks returned and renewal_count, so a loan returned or
    renewed concurrently lands in failed_renew instead of breaking the limit.

    Raises:
        NotFoundError: if the member does not exist
        NothingToProcessError: if no active loan matches
    """
    now = now or datetime.now()
    copy_ids = _dedupe(copy_ids)

    require_member(db, member_id)

    loans = (
        db.query(models.Loan)
        .options(joinedload(models.Loan.book))
        .filter(
            models.Loan.member_id == member_id,
            models.Loan.copy_id.in_(copy_ids),
            models.Loan.returned.is_(False),
        )
        .all()
    )
    if not loans:
        raise NothingToProcessError(
            "The member has not borrowed books with provided ids."
        )

    policy = get_policy(db)
    max_renewals = policy.max_renewal_limit
    expiry_days = policy.expiry_date_days

    snapshot: List[Dict] = [
        {
            "loan_id": loan.id,
            "copy_id": loan.copy_id,
            "book_name": _title(loan),
            "renewal_count": loan.renewal_count,
            "expiry_date": loan.expiry_date,
        }
        for loan in loans
    ]

    successful = []
    limit_reached = []
    failed = []
    for item in snapshot:
        if item["renewal_count"] >= max_renewals:
            limit_reached.append(
                ItemOutcome(
                    copy_id=item["copy_id"],
                    book_name=item["book_name"],
                    status=ItemStatus.LIMIT_REACHED,
                    message="Max renewal limit reached",
                    loan_id=item["loan_id"],
                    expiry_date=item["expiry_date"],
                    renewal_count=item["renewal_count"],
                )
            )
            continue

        new_expiry = renewed_expiry(item["expiry_date"], now, expiry_days)
        try:
            result = db.execute(
                update(models.Loan)
                .where(
                    models.Loan.id == item["loan_id"],
                    models.Loan.returned.is_(False),
                    models.Loan.renewal_count < max_renewals,
                )
                .values(
                    expiry_date=new_expiry,
                    renewal_count=models.Loan.renewal_count + 1,
                )
                .execution_options(synchronize_session=False)
            )
            db.commit()
        except Exception:
            db.rollback()
            raise

        if result.rowcount == 0:
            logger.warning("Renewal of loan %s matched no rows", item["loan_id"])
            failed.append(
                ItemOutcome(
                    copy_id=item["copy_id"],
                    book_name=item["book_name"],
                    status=ItemStatus.FAILED,
                    message="Book Renew Failed",
                    loan_id=item["loan_id"],
                )
            )
            continue

        successful.append(
            ItemOutcome(
                copy_id=item["copy_id"],
                book_name=item["book_name"],
                status=ItemStatus.RENEWED,
                message=f"Book with {item['copy_id']} renewed successfully",
                loan_id=item["loan_id"],
                expiry_date=new_expiry,
                renewal_count=item["renewal_count"] + 1,
            )
        )

    logger.info(
        "Member %s renewed %d loans (%d at limit, %d failed)",
        member_id,
        len(successful),
        len(limit_reached),
        len(failed),
    )
    message = (
        f"{len(successful)} Books Renewed" if successful else "Book Renewal Failed"
    )
    return schemas.RenewResult(
        message=message,
        successful_renews=successful,
        invalid_renewal_books=limit_reached,
        failed_renew=failed,
    )
