import enum
from datetime import datetime
from circulation.database import Base
from sqlalchemy.orm import relationship
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
)


class Role(str, enum.Enum):
    MEMBER = "MEMBER"
    ADMIN = "ADMIN"
    SUPERADMIN = "SUPERADMIN"


class Member(Base):
    """
    Member directory entry.

    Only existence and role are consumed by the borrowing engine; the rest is
    kept so dashboards and listings can show who holds a copy.
    """

    __tablename__ = "members"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    username = Column(String, unique=True, nullable=False, index=True)
    email = Column(String, nullable=True)
    role = Column(Enum(Role), default=Role.MEMBER, nullable=False)
    created_at = Column(DateTime, default=datetime.now, nullable=False)

    loans = relationship("Loan", back_populates="member")


class Copy(Base):
    """
    One physical copy of a book.

    Copies of the same title share a book_code; each copy is loaned on its own.

    Business Logic:
    - available is False exactly while one active (unreturned) Loan references the copy
    - copies may only be deleted while available
    """

    __tablename__ = "books"

    id = Column(Integer, primary_key=True, index=True)
    book_code = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False, index=True)
    authors = Column(JSON, nullable=False, default=list)
    publisher = Column(String, nullable=False)
    published_year = Column(Integer, nullable=False)
    pages = Column(Integer, nullable=False)
    cost = Column(Integer, nullable=False)
    category = Column(String, nullable=False, index=True)
    available = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.now, nullable=False)

    loans = relationship("Loan", back_populates="book")


class Loan(Base):
    """
    Loan (borrow record) linking one copy to one member.

    Lifecycle:
    - created on borrow with renewal_count=0
    - renew moves expiry_date forward and increments renewal_count
    - return sets returned, returned_date and resets renewal_count to 0
    - never deleted; returned loans are the borrowing history

    Internal Working:
    - The partial unique index allows at most one unreturned loan per copy.
      It backs up the conditional availability update done by the engine.
    - reminder_email_sent belongs to the notification side and is never
      touched by the engine.
    """

    __tablename__ = "borrowed_books"

    id = Column(Integer, primary_key=True, index=True)
    copy_id = Column(Integer, ForeignKey("books.id"), nullable=False, index=True)
    member_id = Column(Integer, ForeignKey("members.id"), nullable=False, index=True)
    borrowed_date = Column(DateTime, default=datetime.now, nullable=False)
    expiry_date = Column(DateTime, nullable=False)
    returned_date = Column(DateTime, nullable=True)
    returned = Column(Boolean, default=False, nullable=False)
    renewal_count = Column(Integer, default=0, nullable=False)
    reminder_email_sent = Column(Boolean, default=False, nullable=False)

    book = relationship("Copy", back_populates="loans")
    member = relationship("Member", back_populates="loans")

    __table_args__ = (
        Index(
            "uq_active_loan_per_copy",
            "copy_id",
            unique=True,
            sqlite_where=returned == False,  # noqa: E712
            postgresql_where=returned == False,  # noqa: E712
        ),
    )


class Policy(Base):
    """
    System-wide borrowing policy.

    Exactly one row exists once the library is configured; it is created once
    and updated in place afterwards.
    """

    __tablename__ = "variables"

    id = Column(Integer, primary_key=True)
    max_borrow_limit = Column(Integer, nullable=False)
    max_renewal_limit = Column(Integer, nullable=False)
    expiry_date_days = Column(Integer, nullable=False)
    consecutive_borrow_limit_days = Column(Integer, nullable=False)
    categories = Column(JSON, nullable=False, default=list)
