from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import case, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from models import (
    Account,
    AuthProvider,
    Budget,
    Category,
    RefreshToken,
    Transaction,
    TransactionType,
    User,
    utcnow,
)
from oauth import GoogleProfile, GoogleTokens
from periods import (
    WEEK_LENGTH_DAYS,
    end_of_day,
    month_bounds,
    resolve_range,
    start_of_day,
    weekly_windows,
)
from schemas import (
    BudgetIn,
    BudgetUpdate,
    CategoryIn,
    CategoryUpdate,
    LoginIn,
    RegisterIn,
    TransactionIn,
    TransactionUpdate,
)
from security import (
    TokenPair,
    generate_tokens,
    hash_password,
    refresh_token_expiry,
    verify_access_token,
    verify_password,
    verify_refresh_token,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")
CENT = Decimal("0.01")

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100


class NotFoundError(ValueError):
    pass


class ConflictError(ValueError):
    pass


class AuthError(ValueError):
    pass


def to_money(value: object) -> Decimal:
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def purge_refresh_tokens(
    session: Session, retention_days: int, now: Optional[datetime] = None
) -> int:
    """Delete expired tokens and tokens revoked more than ``retention_days`` ago."""
    now = now or utcnow()
    cutoff = now - timedelta(days=retention_days)
    result = session.execute(
        delete(RefreshToken).where(
            or_(
                RefreshToken.expires_at < now,
                RefreshToken.revoked_at < cutoff,
            )
        )
    )
    session.commit()
    return int(result.rowcount or 0)


@dataclass
class AuthResult:
    user: User
    tokens: TokenPair


class AuthService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _user_by_email(self, email: str) -> Optional[User]:
        return self.session.scalar(
            select(User).where(User.email == normalize_email(email))
        )

    def issue_tokens(self, user: User) -> TokenPair:
        tokens = generate_tokens(user.id, user.email)
        self.session.add(
            RefreshToken(
                token=tokens.refresh_token,
                user_id=user.id,
                expires_at=refresh_token_expiry(),
            )
        )
        return tokens

    def register(self, data: RegisterIn) -> AuthResult:
        email = normalize_email(data.email)
        if self._user_by_email(email):
            raise ConflictError("User with this email already exists")

        user = User(name=data.name, email=email)
        user.accounts.append(
            Account(
                provider_id=AuthProvider.credentials,
                account_id=email,
                password_hash=hash_password(data.password),
            )
        )
        self.session.add(user)
        try:
            self.session.flush()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError("User with this email already exists") from exc

        tokens = self.issue_tokens(user)
        self.session.commit()
        self.session.refresh(user)
        logger.info(f"auth_register: user_id={user.id}")
        return AuthResult(user=user, tokens=tokens)

    def login(self, data: LoginIn) -> AuthResult:
        user = self._user_by_email(data.email)
        account = None
        if user:
            account = self.session.scalar(
                select(Account).where(
                    Account.user_id == user.id,
                    Account.provider_id == AuthProvider.credentials,
                )
            )
        if not user or not account or not account.password_hash:
            raise AuthError("Invalid email or password")
        if not verify_password(data.password, account.password_hash):
            raise AuthError("Invalid email or password")

        tokens = self.issue_tokens(user)
        self.session.commit()
        logger.info(f"auth_login: user_id={user.id} provider=credentials")
        return AuthResult(user=user, tokens=tokens)

    def refresh(self, refresh_token: Optional[str]) -> TokenPair:
        payload = verify_refresh_token(refresh_token)
        if not payload:
            raise AuthError("Invalid refresh token")

        now = utcnow()
        stored = self.session.scalar(
            select(RefreshToken).where(
                RefreshToken.token == refresh_token,
                RefreshToken.user_id == payload.user_id,
                RefreshToken.expires_at > now,
                RefreshToken.revoked_at.is_(None),
            )
        )
        if not stored:
            raise AuthError("Refresh token not found or expired")

        # Conditional update so a token can only be rotated once.
        result = self.session.execute(
            update(RefreshToken)
            .where(RefreshToken.id == stored.id, RefreshToken.revoked_at.is_(None))
            .values(revoked_at=now)
        )
        if result.rowcount != 1:
            self.session.rollback()
            raise AuthError("Refresh token not found or expired")

        user = self.session.get(User, payload.user_id)
        if not user:
            self.session.rollback()
            raise AuthError("User not found")

        tokens = self.issue_tokens(user)
        self.session.commit()
        logger.info(f"auth_refresh: user_id={user.id}")
        return tokens

    def logout(self, refresh_token: Optional[str]) -> None:
        if not refresh_token:
            return
        self.session.execute(
            update(RefreshToken)
            .where(
                RefreshToken.token == refresh_token,
                RefreshToken.revoked_at.is_(None),
            )
            .values(revoked_at=utcnow())
        )
        self.session.commit()

    def logout_all(self, user_id: int) -> int:
        result = self.session.execute(
            update(RefreshToken)
            .where(RefreshToken.user_id == user_id, RefreshToken.revoked_at.is_(None))
            .values(revoked_at=utcnow())
        )
        self.session.commit()
        revoked = int(result.rowcount or 0)
        logger.info(f"auth_logout_all: user_id={user_id} revoked={revoked}")
        return revoked

    def authenticate(self, access_token: Optional[str]) -> User:
        if not access_token:
            raise AuthError("Access token not provided")
        payload = verify_access_token(access_token)
        if not payload:
            raise AuthError("Invalid or expired access token")
        user = self.session.get(User, payload.user_id)
        if not user:
            raise AuthError("User not found")
        return user

    def google_login(
        self, profile: GoogleProfile, provider_tokens: GoogleTokens
    ) -> AuthResult:
        try:
            return self._google_login(profile, provider_tokens)
        except IntegrityError:
            # A concurrent first login inserted the same user or account.
            self.session.rollback()
            logger.info("auth_google_retry: reason=integrity_error")
            return self._google_login(profile, provider_tokens)

    def _google_login(
        self, profile: GoogleProfile, provider_tokens: GoogleTokens
    ) -> AuthResult:
        now = utcnow()
        expires_at = (
            now + timedelta(seconds=provider_tokens.expires_in)
            if provider_tokens.expires_in
            else None
        )
        user = self._user_by_email(profile.email)
        if not user:
            user = User(
                email=normalize_email(profile.email),
                name=profile.name,
                image=profile.picture,
                email_verified_at=now,
            )
            self.session.add(user)
            self.session.flush()

        account = self.session.scalar(
            select(Account).where(
                Account.user_id == user.id,
                Account.provider_id == AuthProvider.google,
            )
        )
        if not account:
            account = Account(
                user_id=user.id,
                provider_id=AuthProvider.google,
                account_id=profile.id,
            )
            self.session.add(account)
        account.access_token = provider_tokens.access_token
        if provider_tokens.refresh_token:
            account.refresh_token = provider_tokens.refresh_token
        account.access_token_expires_at = expires_at
        if not user.image and profile.picture:
            user.image = profile.picture

        self.session.flush()
        tokens = self.issue_tokens(user)
        self.session.commit()
        self.session.refresh(user)
        logger.info(f"auth_login: user_id={user.id} provider=google")
        return AuthResult(user=user, tokens=tokens)


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.name, Category.id)
        )
        return list(self.session.scalars(stmt).all())

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFoundError("Category not found")
        return category

    def _name_taken(
        self, name: str, type_: TransactionType, exclude_id: Optional[int] = None
    ) -> bool:
        stmt = select(Category.id).where(
            Category.user_id == self.user_id,
            Category.type == type_,
            func.lower(Category.name) == name.strip().lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def _commit_unique(self) -> None:
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError("Category with this name already exists") from exc

    def create(self, data: CategoryIn) -> Category:
        if self._name_taken(data.name, data.type):
            raise ConflictError("Category with this name already exists")
        category = Category(
            user_id=self.user_id,
            name=data.name.strip(),
            type=data.type,
            icon=data.icon,
            color=data.color,
        )
        self.session.add(category)
        self._commit_unique()
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: CategoryUpdate) -> Category:
        category = self.get(category_id)
        changes = data.model_dump(exclude_unset=True)
        name = (changes.get("name") or category.name).strip()
        type_ = changes.get("type") or category.type
        if self._name_taken(name, type_, exclude_id=category.id):
            raise ConflictError("Category with this name already exists")

        category.name = name
        category.type = type_
        if "icon" in changes:
            category.icon = changes["icon"]
        if "color" in changes:
            category.color = changes["color"]
        self._commit_unique()
        self.session.refresh(category)
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        self.session.execute(
            update(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.category_id == category.id,
            )
            .values(category_id=None)
        )
        self.session.delete(category)
        self.session.commit()


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    category_id: Optional[int] = None
    on_date: Optional[date] = None
    start: Optional[date] = None
    end: Optional[date] = None


@dataclass
class TransactionPage:
    data: list[Transaction]
    total: int
    limit: int
    offset: int


@dataclass
class Summary:
    total_income: Decimal
    total_expense: Decimal

    @property
    def balance(self) -> Decimal:
        return self.total_income - self.total_expense


@dataclass
class ChartPoint:
    name: str
    income: Decimal
    expense: Decimal


class TransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _category(self, category_id: Optional[int]) -> Optional[Category]:
        if category_id is None:
            return None
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFoundError("Category not found")
        return category

    def create(self, data: TransactionIn) -> Transaction:
        category = self._category(data.category_id)
        if category and category.type != data.type:
            raise ValueError("Category type mismatch")
        txn = Transaction(
            user_id=self.user_id,
            amount=to_money(data.amount),
            type=data.type,
            description=data.description,
            date=data.date or utcnow(),
            category_id=data.category_id,
        )
        self.session.add(txn)
        self.session.commit()
        return self.get(txn.id)

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def _apply_filters(self, stmt, filters: TransactionFilters):
        stmt = stmt.where(Transaction.user_id == self.user_id)
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.category_id:
            stmt = stmt.where(Transaction.category_id == filters.category_id)
        # An exact day wins over a range.
        if filters.on_date:
            stmt = stmt.where(
                Transaction.date.between(
                    start_of_day(filters.on_date), end_of_day(filters.on_date)
                )
            )
        else:
            start, end = resolve_range(filters.start, filters.end)
            if start:
                stmt = stmt.where(Transaction.date >= start)
            if end:
                stmt = stmt.where(Transaction.date <= end)
        return stmt

    def list(
        self,
        filters: Optional[TransactionFilters] = None,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> TransactionPage:
        filters = filters or TransactionFilters()
        limit = min(max(limit, 1), MAX_PAGE_SIZE)
        offset = max(offset, 0)

        stmt = self._apply_filters(
            select(Transaction).options(joinedload(Transaction.category)), filters
        )
        stmt = (
            stmt.order_by(Transaction.date.desc(), Transaction.id.desc())
            .offset(offset)
            .limit(limit)
        )
        total_stmt = self._apply_filters(select(func.count(Transaction.id)), filters)
        return TransactionPage(
            data=list(self.session.scalars(stmt).all()),
            total=int(self.session.execute(total_stmt).scalar_one() or 0),
            limit=limit,
            offset=offset,
        )

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        txn = self.get(transaction_id)
        changes = data.model_dump(exclude_unset=True)

        category_id = changes.get("category_id", txn.category_id)
        type_ = changes.get("type") or txn.type
        category = self._category(category_id)
        if category and category.type != type_:
            raise ValueError("Category type mismatch")

        if changes.get("amount") is not None:
            txn.amount = to_money(changes["amount"])
        if changes.get("date") is not None:
            txn.date = changes["date"]
        if "description" in changes:
            txn.description = changes["description"]
        txn.type = type_
        txn.category_id = category_id
        self.session.commit()
        self.session.expire(txn)
        return self.get(txn.id)

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        self.session.delete(txn)
        self.session.commit()

    def summary(
        self, start: Optional[date] = None, end: Optional[date] = None
    ) -> Summary:
        start_at, end_at = resolve_range(start, end)
        income = func.coalesce(
            func.sum(
                case((Transaction.type == TransactionType.income, Transaction.amount))
            ),
            0,
        )
        expense = func.coalesce(
            func.sum(
                case((Transaction.type == TransactionType.expense, Transaction.amount))
            ),
            0,
        )
        stmt = select(income.label("income"), expense.label("expense")).where(
            Transaction.user_id == self.user_id
        )
        if start_at:
            stmt = stmt.where(Transaction.date >= start_at)
        if end_at:
            stmt = stmt.where(Transaction.date <= end_at)
        row = self.session.execute(stmt).one()
        return Summary(
            total_income=to_money(row.income), total_expense=to_money(row.expense)
        )

    def chart_data(self, start: date, end: date) -> list[ChartPoint]:
        windows = weekly_windows(start, end)
        points = [ChartPoint(w.slug, ZERO, ZERO) for w in windows]

        rows = self.session.execute(
            select(Transaction.date, Transaction.type, Transaction.amount).where(
                Transaction.user_id == self.user_id,
                Transaction.date.between(start_of_day(start), end_of_day(end)),
            )
        ).all()
        for row in rows:
            index = (row.date.date() - start).days // WEEK_LENGTH_DAYS
            point = points[index]
            amount = to_money(row.amount)
            if row.type == TransactionType.income:
                point.income += amount
            else:
                point.expense += amount
        return points


@dataclass
class BudgetProgress:
    budget: Budget
    spent: Decimal

    @property
    def remaining(self) -> Decimal:
        return to_money(self.budget.amount) - self.spent


class BudgetService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def spent_for(self, budget: Budget) -> Decimal:
        start, end = month_bounds(budget.year, budget.month)
        stmt = select(func.coalesce(func.sum(Transaction.amount), 0)).where(
            Transaction.user_id == self.user_id,
            Transaction.category_id == budget.category_id,
            Transaction.type == TransactionType.expense,
            Transaction.date.between(start, end),
        )
        return to_money(self.session.execute(stmt).scalar_one())

    def _progress(self, budget: Budget) -> BudgetProgress:
        return BudgetProgress(budget=budget, spent=self.spent_for(budget))

    def _get_row(self, budget_id: int) -> Budget:
        budget = self.session.scalar(
            select(Budget)
            .options(joinedload(Budget.category))
            .where(Budget.id == budget_id, Budget.user_id == self.user_id)
        )
        if not budget:
            raise NotFoundError("Budget not found")
        return budget

    def create(self, data: BudgetIn) -> BudgetProgress:
        category = self.session.get(Category, data.category_id)
        if not category or category.user_id != self.user_id:
            raise NotFoundError("Category not found")

        existing = self.session.scalar(
            select(Budget.id).where(
                Budget.user_id == self.user_id,
                Budget.category_id == data.category_id,
                Budget.month == data.month,
                Budget.year == data.year,
            )
        )
        if existing is not None:
            raise ConflictError("Budget for this category and period already exists")

        budget = Budget(
            user_id=self.user_id,
            amount=to_money(data.amount),
            month=data.month,
            year=data.year,
            category_id=data.category_id,
        )
        self.session.add(budget)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError(
                "Budget for this category and period already exists"
            ) from exc
        return self.get(budget.id)

    def list(
        self, month: Optional[int] = None, year: Optional[int] = None
    ) -> list[BudgetProgress]:
        stmt = (
            select(Budget)
            .options(joinedload(Budget.category))
            .where(Budget.user_id == self.user_id)
            .order_by(Budget.year.desc(), Budget.month.desc(), Budget.id.asc())
        )
        if month:
            stmt = stmt.where(Budget.month == month)
        if year:
            stmt = stmt.where(Budget.year == year)
        return [self._progress(budget) for budget in self.session.scalars(stmt).all()]

    def get(self, budget_id: int) -> BudgetProgress:
        return self._progress(self._get_row(budget_id))

    def update(self, budget_id: int, data: BudgetUpdate) -> BudgetProgress:
        budget = self._get_row(budget_id)
        if data.amount is not None:
            budget.amount = to_money(data.amount)
        self.session.commit()
        return self.get(budget.id)

    def delete(self, budget_id: int) -> None:
        budget = self._get_row(budget_id)
        self.session.delete(budget)
        self.session.commit()


DEMO_EMAIL = "demo@user.in"
DEMO_PASSWORD = "demo123456"

_DEMO_CATEGORIES = [
    ("Groceries", TransactionType.expense, "\U0001f6d2", "#FF5733"),
    ("Transport", TransactionType.expense, "\U0001f697", "#3498DB"),
    ("Entertainment", TransactionType.expense, "\U0001f3ac", "#9B59B6"),
    ("Utilities", TransactionType.expense, "\U0001f4a1", "#F39C12"),
    ("Salary", TransactionType.income, "\U0001f4b0", "#27AE60"),
    ("Freelance", TransactionType.income, "\U0001f4bb", "#2ECC71"),
]

_DEMO_BUDGETS = [
    ("Groceries", "500"),
    ("Transport", "200"),
    ("Entertainment", "150"),
]

# (category, amount, day of month, description)
_DEMO_TRANSACTIONS = [
    ("Salary", "5000", 1, "Monthly Salary"),
    ("Freelance", "800", 10, "Freelance Project"),
    ("Groceries", "150", 3, "Weekly groceries"),
    ("Groceries", "85", 10, "Grocery shopping"),
    ("Groceries", "120", 17, "Supermarket run"),
    ("Transport", "50", 5, "Gas refill"),
    ("Transport", "35", 12, "Uber rides"),
    ("Entertainment", "45", 8, "Movie tickets"),
    ("Entertainment", "30", 1, "Netflix subscription"),
    ("Utilities", "95", 15, "Electricity bill"),
    ("Utilities", "45", 15, "Internet bill"),
]


class DemoService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _seed(self, user: User, today: date) -> None:
        categories: dict[str, Category] = {}
        for name, type_, icon, color in _DEMO_CATEGORIES:
            category = Category(
                user_id=user.id, name=name, type=type_, icon=icon, color=color
            )
            self.session.add(category)
            categories[name] = category
        self.session.flush()

        for name, amount in _DEMO_BUDGETS:
            self.session.add(
                Budget(
                    user_id=user.id,
                    category_id=categories[name].id,
                    amount=Decimal(amount),
                    month=today.month,
                    year=today.year,
                )
            )

        for name, amount, day, description in _DEMO_TRANSACTIONS:
            category = categories[name]
            self.session.add(
                Transaction(
                    user_id=user.id,
                    category_id=category.id,
                    type=category.type,
                    amount=Decimal(amount),
                    description=description,
                    date=start_of_day(date(today.year, today.month, day)),
                )
            )

    def login(self, today: Optional[date] = None) -> AuthResult:
        today = today or date.today()
        auth = AuthService(self.session)
        user = self.session.scalar(select(User).where(User.email == DEMO_EMAIL))
        if not user:
            user = User(name="Demo User", email=DEMO_EMAIL)
            user.accounts.append(
                Account(
                    provider_id=AuthProvider.credentials,
                    account_id=DEMO_EMAIL,
                    password_hash=hash_password(DEMO_PASSWORD),
                )
            )
            self.session.add(user)
            self.session.flush()
            self._seed(user, today)
            logger.info(f"demo_seeded: user_id={user.id}")

        tokens = auth.issue_tokens(user)
        self.session.commit()
        self.session.refresh(user)
        return AuthResult(user=user, tokens=tokens)
