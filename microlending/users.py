"""
Borrower Module

Borrower profiles as the lending core sees them: citizenship, national id,
credit score and loan limit. Profile CRUD belongs to the admin surface; the
loan state machine only moves ``credit_score`` and the loan counters, always
inside the same atomic unit as the loan transition that causes it.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import List, Optional, Any
from enum import Enum
import random
import re
import uuid

from .errors import NotFound, StateConflict, ValidationError
from .money import to_amount
from .storage import StorageInterface, StorageRecord


MIN_CREDIT_SCORE = 0
MAX_CREDIT_SCORE = 1000

_ID_WEIGHTS = (8, 7, 6, 5, 4, 3, 2, 1)


class UserRole(Enum):
    USER = "user"
    ADMIN = "admin"


def _national_id_check_digit(base_digits: List[int]) -> int:
    total = sum(digit * weight for digit, weight in zip(base_digits, _ID_WEIGHTS))
    remainder = total % 11
    return 0 if remainder == 0 else 11 - remainder


def validate_national_id(national_id: str) -> bool:
    """
    Validate a 9-digit national id whose last digit is a mod-11 check digit
    over the first eight (weights 8..1).
    """
    if not national_id or not re.fullmatch(r'\d{9}', national_id):
        return False
    digits = [int(c) for c in national_id]
    return _national_id_check_digit(digits[:8]) == digits[8]


def generate_national_id(rng: Optional[random.Random] = None) -> str:
    """Generate a valid national id (test fixtures and seeding)"""
    rng = rng or random.Random()
    while True:
        base = [rng.randint(0, 9) for _ in range(8)]
        check = _national_id_check_digit(base)
        # A check value of 10 has no single-digit form
        if check < 10:
            return ''.join(str(d) for d in base) + str(check)


@dataclass
class Borrower(StorageRecord):
    """Borrower profile"""
    full_name: str
    email: str
    phone_number: Optional[str] = None
    national_id: Optional[str] = None
    is_citizen: bool = False
    credit_score: int = 500
    loan_limit: Decimal = Decimal('50000.00')
    total_loans_applied: int = 0
    total_loans_approved: int = 0
    role: UserRole = UserRole.USER
    is_active: bool = True
    version: int = 0

    decimal_fields = ('loan_limit',)
    enum_fields = {'role': UserRole}

    def __post_init__(self):
        if not MIN_CREDIT_SCORE <= self.credit_score <= MAX_CREDIT_SCORE:
            raise ValueError(f"Credit score must be between {MIN_CREDIT_SCORE} and {MAX_CREDIT_SCORE}")

    @property
    def has_valid_id(self) -> bool:
        """Citizen with a national id on file"""
        return self.is_citizen and bool(self.national_id)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    def raise_credit_score(self, delta: int) -> None:
        """Raise the score by ``delta``, capped at the maximum"""
        self.credit_score = min(self.credit_score + delta, MAX_CREDIT_SCORE)


class UserManager:
    """
    Loads and persists borrower profiles
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "users"

    def create_user(
        self,
        full_name: str,
        email: str,
        phone_number: Optional[str] = None,
        national_id: Optional[str] = None,
        is_citizen: bool = False,
        credit_score: int = 500,
        loan_limit: Any = "50000",
        role: UserRole = UserRole.USER,
        total_loans_applied: int = 0
    ) -> Borrower:
        """
        Register a borrower (or admin)

        Raises:
            ValidationError: malformed email or national id
        """
        if not re.match(r'^[^@\s]+@[^@\s]+\.[^@\s]+$', email or ''):
            raise ValidationError(f"Invalid email address: {email}")
        if national_id and not validate_national_id(national_id):
            raise ValidationError("Invalid national id")

        now = datetime.now(timezone.utc)
        try:
            user = Borrower(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                full_name=full_name,
                email=email,
                phone_number=phone_number,
                national_id=national_id,
                is_citizen=is_citizen,
                credit_score=credit_score,
                loan_limit=to_amount(loan_limit),
                total_loans_applied=total_loans_applied,
                role=role
            )
        except ValueError as e:
            raise ValidationError(str(e))

        self.storage.save(self.table_name, user.id, user.to_dict())
        return user

    def get_user(self, user_id: str) -> Borrower:
        """Get borrower by ID, raising NotFound"""
        data = self.storage.load(self.table_name, user_id)
        if not data:
            raise NotFound(f"User {user_id} not found")
        return Borrower.from_dict(data)

    def find_user(self, user_id: str) -> Optional[Borrower]:
        data = self.storage.load(self.table_name, user_id)
        return Borrower.from_dict(data) if data else None

    def list_admins(self) -> List[Borrower]:
        return [
            Borrower.from_dict(data)
            for data in self.storage.find(self.table_name, {"role": UserRole.ADMIN.value})
            if data.get("is_active", True)
        ]

    def save_user(self, user: Borrower) -> None:
        """
        Persist ``user`` if nobody else wrote it since it was loaded

        Raises:
            StateConflict: the stored version moved on
        """
        expected = user.version
        user.version += 1
        user.updated_at = datetime.now(timezone.utc)
        if not self.storage.compare_and_swap(self.table_name, user.id, expected, user.to_dict()):
            user.version = expected
            raise StateConflict(f"User {user.id} was modified concurrently")
