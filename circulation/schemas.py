import enum
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from circulation.models import Role


class CamelModel(BaseModel):
    """
    Base schema for every request and response body.

    Internal Working:
    - alias_generator exposes snake_case fields as camelCase JSON keys
    - populate_by_name lets Python code build models with field names
    - from_attributes lets Pydantic read ORM objects directly
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


def _upper_unique(values: List[str]) -> List[str]:
    seen = []
    for value in values:
        label = value.strip().upper()
        if label and label not in seen:
            seen.append(label)
    return seen


# ----------------------
# Circulation requests
# ----------------------


class CirculationRequest(CamelModel):
    """
    Body shared by borrow, return and renew.

    bookIds are copy ids (one physical copy each), not book codes.
    """

    member_id: int = Field(..., gt=0)
    book_ids: List[int] = Field(..., min_length=1)

    @field_validator("book_ids")
    @classmethod
    def ids_must_be_positive(cls, value: List[int]) -> List[int]:
        if any(book_id <= 0 for book_id in value):
            raise ValueError("Provide valid bookIds.")
        return value


# ----------------------
# Circulation results
# ----------------------


class ItemStatus(str, enum.Enum):
    BORROWED = "BORROWED"
    RETURNED = "RETURNED"
    RENEWED = "RENEWED"
    RESTRICTED = "RESTRICTED"
    INVALID = "INVALID"
    LIMIT_REACHED = "LIMIT_REACHED"
    FAILED = "FAILED"


class ItemOutcome(CamelModel):
    """Per-copy outcome of a borrow, return or renew request."""

    copy_id: int = Field(..., alias="bookId")
    book_name: Optional[str] = None
    status: ItemStatus
    message: str
    loan_id: Optional[int] = None
    expiry_date: Optional[datetime] = None
    renewal_count: Optional[int] = None


class BorrowResult(CamelModel):
    message: str
    borrowed_books: List[ItemOutcome] = []
    invalid_books_ids: List[int] = Field(default_factory=list, alias="invalidBooksIds")
    restricted_books: List[ItemOutcome] = []
    borrowed_count: Optional[int] = None
    remaining_limit: Optional[int] = None


class ReturnResult(CamelModel):
    message: str
    returned_count: int
    returned_books: List[ItemOutcome] = []


class RenewResult(CamelModel):
    message: str
    successful_renews: List[ItemOutcome] = Field(default_factory=list, alias="successfullRenews")
    invalid_renewal_books: List[ItemOutcome] = []
    failed_renew: List[ItemOutcome] = []


# ----------------------
# Policy
# ----------------------


class PolicyBase(CamelModel):
    max_borrow_limit: int = Field(..., gt=0)
    max_renewal_limit: int = Field(..., ge=0)
    expiry_date_days: int = Field(..., gt=0)
    consecutive_borrow_limit_days: int = Field(..., gt=0)
    categories: List[str] = Field(..., min_length=1)


class PolicyWrite(PolicyBase):
    """Body for creating and updating the policy. Categories are upper-cased."""

    @field_validator("categories")
    @classmethod
    def normalise_categories(cls, value: List[str]) -> List[str]:
        labels = _upper_unique(value)
        if not labels:
            raise ValueError("At least one category is required")
        return labels


class Policy(PolicyBase):
    pass


class CategoryRemove(CamelModel):
    category: str = Field(..., min_length=1)


# ----------------------
# Inventory
# ----------------------


class BookFields(CamelModel):
    """Title metadata shared by every copy with the same bookCode."""

    name: str = Field(..., min_length=2)
    authors: List[str] = Field(..., min_length=1)
    publisher: str = Field(..., min_length=2)
    published_year: int = Field(..., ge=1000)
    pages: int = Field(..., gt=0)
    cost: int = Field(..., gt=0)
    category: str = Field(..., min_length=2)

    @field_validator("authors")
    @classmethod
    def author_names(cls, value: List[str]) -> List[str]:
        if any(len(author.strip()) < 2 for author in value):
            raise ValueError("Author name must be at least 2 characters long")
        return value

    @field_validator("published_year")
    @classmethod
    def not_in_future(cls, value: int) -> int:
        if value > datetime.now().year:
            raise ValueError("Year cannot be in the future")
        return value

    @field_validator("category")
    @classmethod
    def upper_category(cls, value: str) -> str:
        return value.strip().upper()


class BookCreate(BookFields):
    """
    Schema for adding a new title with its initial stock.

    stock copies are created, all sharing one generated bookCode.
    """

    stock: int = Field(..., gt=0)


class BookUpdate(BookFields):
    book_code: str = Field(..., min_length=1)


class StockAdd(CamelModel):
    book_code: str = Field(..., min_length=1)
    stock: int = Field(..., gt=0)


class BookDelete(CamelModel):
    book_code: str = Field(..., min_length=1)


class BookDeleteByCount(BookDelete):
    count: int = Field(..., gt=0)


class Copy(CamelModel):
    id: int
    book_code: str
    name: str
    authors: List[str]
    publisher: str
    published_year: int
    pages: int
    cost: int
    category: str
    available: bool


class GroupedBook(Copy):
    """A title represented by its first copy plus stock counters."""

    total_count: int
    available_count: int


# ----------------------
# Members and loans
# ----------------------


class MemberCreate(CamelModel):
    name: str = Field(..., min_length=1, max_length=200)
    username: str = Field(..., min_length=1, max_length=100)
    email: Optional[str] = None
    role: Role = Role.MEMBER


class Member(CamelModel):
    id: int
    name: str
    username: str
    email: Optional[str] = None
    role: Role


class Loan(CamelModel):
    """
    Loan record as shown to clients.

    book is the borrowed copy; member_name is filled only in admin listings.
    """

    id: int
    copy_id: int = Field(..., alias="bookId")
    member_id: int
    borrowed_date: datetime
    expiry_date: datetime
    returned_date: Optional[datetime] = None
    returned: bool
    renewal_count: int
    book: Optional[Copy] = None
    member_name: Optional[str] = None


class Pagination(CamelModel):
    total_count: int
    total_pages: int
    current_page: int
    has_next_page: bool
    has_prev_page: bool


class ExpiredLoansPage(CamelModel):
    message: str
    expired_books: List[Loan] = []
    pagination: Pagination


class BorrowedLoansPage(CamelModel):
    message: str
    borrowed_books: List[Loan] = []
    pagination: Pagination


class LoanHistory(CamelModel):
    message: str
    history_books: List[Loan] = []


# ----------------------
# Dashboards
# ----------------------


class CategoryStat(CamelModel):
    category: str
    total_count: int
    borrowed_count: int


class MemberDashboard(CamelModel):
    message: str = "Details Fetched Successfully"
    count_of_total_borrowed: int = 0
    count_of_currently_borrowed_books: int = 0
    count_of_expired_books: int = 0
    expired_books: List[Loan] = []
    currently_borrowed_books: List[GroupedBook] = []


class AdminDashboard(CamelModel):
    message: str = "Details Fetched Successfully"
    count_of_total_borrowed: int = 0
    count_of_currently_borrowed_books: int = 0
    count_of_expired_books: int = 0
    total_books_count: int = 0
    total_unique_books_count: int = 0
    total_member_count: int = 0
    expired_books: List[Loan] = []
    category_stats: List[CategoryStat] = []
    variables: Optional[Policy] = None


class MessageResponse(CamelModel):
    message: str
    count: Optional[int] = None
    book_code: Optional[str] = None
