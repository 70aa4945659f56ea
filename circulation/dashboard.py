from collections import Counter
from datetime import datetime
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session, joinedload

from circulation import models
from circulation import schemas
from circulation.inventory import group_books, loan_view
from circulation.policy import find_policy


def _partition(loans, now: datetime):
    active = [loan for loan in loans if not loan.returned]
    expired = [loan for loan in active if loan.expiry_date <= now]
    return active, expired


def _loans_newest_first(db: Session, member_id: Optional[int] = None):
    query = db.query(models.Loan).options(joinedload(models.Loan.book))
    if member_id is not None:
        query = query.filter(models.Loan.member_id == member_id)
    return query.order_by(
        models.Loan.borrowed_date.desc(), models.Loan.id.desc()
    ).all()


def system_dashboard(db: Session, now: Optional[datetime] = None) -> schemas.AdminDashboard:
    """
    Library-wide rollup for the admin dashboard.

    Internal Working:
    - One query loads every loan with its copy, newest first
    - Loans are split in Python into active and expired (unreturned with
      expiry_date <= now)
    - category_stats pairs the number of copies in each category with the
      number of copies of that category currently on loan
    - Categories from the policy that have no copies are reported with zeros

    Works on an empty library and without a policy (variables is then null).
    """
    now = now or datetime.now()
    loans = _loans_newest_first(db)
    active, expired = _partition(loans, now)

    copies_per_category = dict(
        db.query(models.Copy.category, func.count(models.Copy.id))
        .group_by(models.Copy.category)
        .all()
    )
    on_loan_per_category = Counter(
        loan.book.category for loan in active if loan.book is not None
    )

    policy = find_policy(db)
    categories = set(copies_per_category)
    if policy is not None:
        categories.update(policy.categories)

    category_stats = [
        schemas.CategoryStat(
            category=category,
            total_count=copies_per_category.get(category, 0),
            borrowed_count=on_loan_per_category.get(category, 0),
        )
        for category in sorted(categories)
    ]

    total_books_count = db.query(func.count(models.Copy.id)).scalar()
    total_unique_books_count = db.query(
        func.count(func.distinct(models.Copy.book_code))
    ).scalar()
    total_member_count = (
        db.query(func.count(models.Member.id))
        .filter(models.Member.role == models.Role.MEMBER)
        .scalar()
    )

    return schemas.AdminDashboard(
        count_of_total_borrowed=len(loans),
        count_of_currently_borrowed_books=len(active),
        count_of_expired_books=len(expired),
        total_books_count=total_books_count,
        total_unique_books_count=total_unique_books_count,
        total_member_count=total_member_count,
        expired_books=[loan_view(loan) for loan in expired],
        category_stats=category_stats,
        variables=schemas.Policy.model_validate(policy) if policy is not None else None,
    )


def member_dashboard(
    db: Session, member_id: int, now: Optional[datetime] = None
) -> schemas.MemberDashboard:
    """Rollup of one member's loans; currently borrowed copies are grouped by title."""
    now = now or datetime.now()
    loans = _loans_newest_first(db, member_id)
    active, expired = _partition(loans, now)

    return schemas.MemberDashboard(
        count_of_total_borrowed=len(loans),
        count_of_currently_borrowed_books=len(active),
        count_of_expired_books=len(expired),
        expired_books=[loan_view(loan) for loan in expired],
        currently_borrowed_books=group_books(loan.book for loan in active),
    )
