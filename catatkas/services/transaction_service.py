import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional
from uuid import UUID

from sqlalchemy import case, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from catatkas.logging_config import get_logger
from catatkas.models import Category, Transaction, User
from catatkas.schemas.session import TransactionFields
from catatkas.services.result import ErrorCode, Result
from catatkas.services.state_machine import TransactionType

logger = get_logger("transaction_service")

MIN_AMOUNT = Decimal("1")
MAX_AMOUNT = Decimal("999999999999")
VALID_ROLES = ("employee", "boss", "investor", "dev")
ORG_WIDE_ROLES = ("boss", "investor", "dev")

# Jakarta time, used for report period boundaries
LOCAL_TZ = timezone(timedelta(hours=7))

_NON_AMOUNT_CHARS = re.compile(r"[^\d,.]")


@dataclass
class PeriodSummary:
    start: datetime
    end: datetime
    income: Decimal
    expense: Decimal
    count: int

    @property
    def net(self) -> Decimal:
        return self.income - self.expense


def parse_amount(text: str) -> Result[Decimal]:
    """Parse a user-typed rupiah amount such as ``1.500.000``, ``500,000`` or ``25000``."""
    cleaned = _NON_AMOUNT_CHARS.sub("", text or "")
    normalized = cleaned

    if "," in cleaned and "." not in cleaned:
        normalized = cleaned.replace(",", "")
    elif "." in cleaned and "," not in cleaned:
        dot_count = cleaned.count(".")
        if dot_count > 1 or len(cleaned.split(".")[0]) > 3:
            normalized = cleaned.replace(".", "")
    else:
        normalized = cleaned.replace(",", "")

    try:
        amount = Decimal(normalized)
    except InvalidOperation:
        return Result.failure(f"Invalid amount: {text!r}", ErrorCode.INVALID_AMOUNT)

    if not amount.is_finite() or amount < MIN_AMOUNT or amount > MAX_AMOUNT:
        return Result.failure(f"Amount out of range: {text!r}", ErrorCode.INVALID_AMOUNT)
    return Result.success(amount.quantize(Decimal("0.01")))


def format_currency(amount: Decimal | int | float) -> str:
    whole = int(Decimal(amount).to_integral_value())
    return "Rp " + f"{whole:,}".replace(",", ".")


def period_range(period: str, now: Optional[datetime] = None) -> tuple[datetime, datetime]:
    """Start (inclusive) and end (exclusive) of ``today``, ``week`` or ``month`` in local time."""
    now = (now or datetime.now(timezone.utc)).astimezone(LOCAL_TZ)
    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)

    if period == "today":
        start = day_start
    elif period == "week":
        start = day_start - timedelta(days=day_start.weekday())
    elif period == "month":
        start = day_start.replace(day=1)
    else:
        raise ValueError(f"Unknown period: {period}")
    return start, now


def get_user_by_phone(db: Session, phone: str) -> Optional[User]:
    return db.query(User).filter(User.phone == phone, User.is_active.is_(True)).first()


def update_user_role(db: Session, user: User, role: str) -> Result[User]:
    if role not in VALID_ROLES:
        return Result.failure(f"Invalid role: {role}", "invalid_role")
    user.role = role
    db.commit()
    logger.info("User role updated", extra={"context": {"user_id": str(user.id), "role": role}})
    return Result.success(user)


def list_categories(db: Session, transaction_type: TransactionType | str) -> list[Category]:
    transaction_type = TransactionType(transaction_type)
    return (
        db.query(Category)
        .filter(Category.type == transaction_type.value, Category.is_active.is_(True))
        .order_by(Category.sort_order, Category.name)
        .all()
    )


def find_category(db: Session, transaction_type: TransactionType | str, text: str) -> Optional[Category]:
    """Resolve a category by its 1-based list number or by name (case-insensitive)."""
    categories = list_categories(db, transaction_type)
    query = (text or "").strip()
    if query.isdigit():
        index = int(query) - 1
        return categories[index] if 0 <= index < len(categories) else None

    lowered = query.lower()
    for category in categories:
        if category.name.lower() == lowered:
            return category
    return None


def record_transaction(db: Session, user_id: UUID, fields: TransactionFields) -> Result[Transaction]:
    """Commit a fully collected transaction. Database errors come back as a failed Result."""
    missing = [name for name in ("transaction_type", "category", "amount") if getattr(fields, name) is None]
    if missing:
        return Result.failure(f"Missing fields: {', '.join(missing)}", ErrorCode.USAGE_ERROR)

    now = datetime.now(timezone.utc)
    transaction = Transaction(
        user_id=user_id,
        type=TransactionType(fields.transaction_type).value,
        category=fields.category,
        amount=fields.amount,
        description=fields.description,
        timestamp=now,
        created_at=now,
    )
    try:
        db.add(transaction)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error(
            "Failed to record transaction",
            extra={"context": {"user_id": str(user_id), "error": str(exc)}},
            exc_info=True,
        )
        return Result.failure(str(exc), ErrorCode.DB_ERROR)

    logger.info(
        "Transaction recorded",
        extra={
            "context": {
                "user_id": str(user_id),
                "transaction_id": str(transaction.id),
                "type": transaction.type,
                "amount": str(transaction.amount),
            }
        },
    )
    return Result.success(transaction)


def get_summary(
    db: Session,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    user_id: Optional[UUID] = None,
) -> PeriodSummary:
    """Income and expense totals in ``[start, end)``. No bounds means all time."""
    income_sum = func.coalesce(func.sum(case((Transaction.type == "income", Transaction.amount), else_=0)), 0)
    expense_sum = func.coalesce(func.sum(case((Transaction.type == "expense", Transaction.amount), else_=0)), 0)

    query = db.query(income_sum, expense_sum, func.count(Transaction.id))
    if start is not None:
        query = query.filter(Transaction.timestamp >= start)
    if end is not None:
        query = query.filter(Transaction.timestamp < end)
    if user_id is not None:
        query = query.filter(Transaction.user_id == user_id)

    income, expense, count = query.one()
    return PeriodSummary(
        start=start,
        end=end,
        income=Decimal(income or 0),
        expense=Decimal(expense or 0),
        count=int(count or 0),
    )
