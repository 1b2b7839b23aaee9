"""
Shared engine types: closed enumerations and the validated record shapes
the calculators and the orchestrator work with.
"""
from dataclasses import dataclass, field
from datetime import date, time
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from gym_ledger.engine.errors import ValidationError

CENT = Decimal('0.01')
ZERO = Decimal('0')


def to_decimal(value, field_name='amount') -> Decimal:
    """Convert an int/str/float/Decimal into Decimal, rejecting garbage"""
    if value is None or value == '':
        return ZERO
    if isinstance(value, Decimal):
        return value
    try:
        # str() keeps floats like 0.1 from dragging binary noise along
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"'{field_name}' is not a valid amount: {value!r}")


def money(value) -> Decimal:
    """Round to the currency's minor unit"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


class MembershipStatus(str, Enum):
    TRIAL = 'trial'
    ACTIVE = 'active'
    PENDING_PAYMENT = 'pending_payment'
    SUSPENDED = 'suspended'
    FROZEN = 'frozen'
    EXPIRED = 'expired'
    CANCELLED = 'cancelled'
    TRANSFERRED = 'transferred'
    UPGRADED = 'upgraded'
    DOWNGRADED = 'downgraded'

    def __str__(self):
        return self.value

    @property
    def is_terminal(self):
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    MembershipStatus.EXPIRED,
    MembershipStatus.CANCELLED,
    MembershipStatus.TRANSFERRED,
    MembershipStatus.UPGRADED,
    MembershipStatus.DOWNGRADED,
})


class TransitionAction(str, Enum):
    UPGRADE = 'upgrade'
    DOWNGRADE = 'downgrade'
    TRANSFER = 'transfer'
    FREEZE = 'freeze'
    UNFREEZE = 'unfreeze'
    SUSPEND = 'suspend'
    REACTIVATE = 'reactivate'
    CANCEL = 'cancel'

    def __str__(self):
        return self.value


# change_type values written to the audit trail
TRAINER_CHANGE = 'trainer_change'


class ProrationPolicy(str, Enum):
    PROPORTIONAL = 'proportional'
    FULL = 'full'
    CUSTOM = 'custom'

    def __str__(self):
        return self.value


class CommissionType(str, Enum):
    PERCENTAGE = 'percentage'
    FIXED_AMOUNT = 'fixed_amount'
    PER_SESSION = 'per_session'

    def __str__(self):
        return self.value


class InstallmentFrequency(str, Enum):
    WEEKLY = 'weekly'
    MONTHLY = 'monthly'
    QUARTERLY = 'quarterly'

    def __str__(self):
        return self.value


class RefundMethod(str, Enum):
    CREDIT = 'credit'
    CASH = 'cash'
    BANK_TRANSFER = 'bank_transfer'

    def __str__(self):
        return self.value


def parse_enum(enum_cls, value, field_name):
    """Coerce a raw value into a member of enum_cls"""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ', '.join(member.value for member in enum_cls)
        raise ValidationError(f"'{field_name}' must be one of: {allowed} (got {value!r})")


def _require(data: Mapping[str, Any], key: str):
    if data.get(key) is None:
        raise ValidationError(f"'{key}' is required")
    return data[key]


@dataclass(frozen=True)
class Package:
    id: int
    name: str
    price: Decimal
    duration_days: int
    pt_sessions_included: int = 0
    transfer_fee: Decimal = ZERO

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> 'Package':
        return cls(
            id=_require(data, 'id'),
            name=data.get('name') or '',
            price=to_decimal(_require(data, 'price'), 'price'),
            duration_days=int(_require(data, 'duration_days')),
            pt_sessions_included=int(data.get('pt_sessions_included') or 0),
            transfer_fee=to_decimal(data.get('transfer_fee'), 'transfer_fee'),
        )


@dataclass(frozen=True)
class MemberRecord:
    id: int
    status: str = 'active'
    status_membership_id: Optional[int] = None
    credit_balance: Decimal = ZERO
    assigned_trainer_id: Optional[int] = None


@dataclass(frozen=True)
class MembershipRecord:
    id: int
    member_id: int
    package_id: int
    status: MembershipStatus
    start_date: date
    end_date: date
    original_amount: Decimal = ZERO
    total_amount_due: Decimal = ZERO
    amount_paid: Decimal = ZERO
    amount_pending: Decimal = ZERO
    is_trial: bool = False
    original_membership_id: Optional[int] = None
    actual_end_date: Optional[date] = None
    freeze_start_date: Optional[date] = None
    freeze_end_date: Optional[date] = None
    freeze_reason: Optional[str] = None
    freeze_days_used: int = 0
    suspension_reason: Optional[str] = None
    suspended_at: Optional[date] = None
    cancellation_date: Optional[date] = None
    cancellation_reason: Optional[str] = None
    pt_sessions_remaining: int = 0
    pt_sessions_used: int = 0
    payment_plan_id: Optional[int] = None
    transferred_to_member_id: Optional[int] = None
    transferred_from_member_id: Optional[int] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> 'MembershipRecord':
        """Validate a raw mapping once so calculators can trust every field"""
        start = _require(data, 'start_date')
        end = _require(data, 'end_date')
        if not isinstance(start, date) or not isinstance(end, date):
            raise ValidationError("'start_date' and 'end_date' must be dates")
        kwargs = {name: data.get(name) for name in cls.__dataclass_fields__ if name in data}
        kwargs.update(
            id=_require(data, 'id'),
            member_id=_require(data, 'member_id'),
            package_id=_require(data, 'package_id'),
            status=parse_enum(MembershipStatus, _require(data, 'status'), 'status'),
            original_amount=to_decimal(data.get('original_amount'), 'original_amount'),
            total_amount_due=to_decimal(data.get('total_amount_due'), 'total_amount_due'),
            amount_paid=to_decimal(data.get('amount_paid'), 'amount_paid'),
            amount_pending=to_decimal(data.get('amount_pending'), 'amount_pending'),
            freeze_days_used=int(data.get('freeze_days_used') or 0),
            pt_sessions_remaining=int(data.get('pt_sessions_remaining') or 0),
            pt_sessions_used=int(data.get('pt_sessions_used') or 0),
        )
        return cls(**kwargs)

    @property
    def total_days(self) -> int:
        return (self.end_date - self.start_date).days

    @property
    def total_sessions(self) -> int:
        return self.pt_sessions_remaining + self.pt_sessions_used


@dataclass(frozen=True)
class CommissionRuleRecord:
    id: Optional[int]
    trainer_id: int
    package_id: int
    member_id: int
    commission_type: CommissionType
    commission_value: Decimal
    valid_from: date
    membership_id: Optional[int] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    valid_until: Optional[date] = None
    is_active: bool = True

    def parameters(self) -> Dict[str, Any]:
        """The commission terms carried over when a rule is reassigned"""
        return {
            'commission_type': self.commission_type,
            'commission_value': self.commission_value,
            'min_amount': self.min_amount,
            'max_amount': self.max_amount,
        }


@dataclass(frozen=True)
class SessionRecord:
    id: int
    member_id: int
    trainer_id: int
    session_date: date
    start_time: time
    end_time: time
    membership_id: Optional[int] = None
    completed: bool = False
    cancelled: bool = False


@dataclass(frozen=True)
class InstallmentRecord:
    id: int
    payment_plan_id: int
    installment_number: int
    amount: Decimal
    due_date: date
    paid_amount: Decimal = ZERO
    late_fee: Decimal = ZERO
    status: str = 'pending'
    paid_date: Optional[date] = None


@dataclass(frozen=True)
class PaymentPlanRecord:
    id: int
    member_id: int
    total_amount: Decimal
    down_payment: Decimal
    remaining_amount: Decimal
    number_of_installments: int
    installment_amount: Decimal
    installment_frequency: str
    first_installment_date: date
    last_installment_date: date
    late_fee_percentage: Decimal = Decimal('2')
    grace_period_days: int = 7
    status: str = 'active'
    membership_id: Optional[int] = None


@dataclass(frozen=True)
class EngineSettings:
    """Tunables the application layer hands to the engine"""
    default_policy: ProrationPolicy = ProrationPolicy.PROPORTIONAL
    max_freeze_days: int = 365
    late_fee_percentage: Decimal = Decimal('2.0')
    grace_period_days: int = 7
    default_installment_count: int = 12

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> 'EngineSettings':
        return cls(
            default_policy=parse_enum(ProrationPolicy, config.get('DEFAULT_PRORATION_POLICY', 'proportional'),
                                      'DEFAULT_PRORATION_POLICY'),
            max_freeze_days=int(config.get('MAX_FREEZE_DAYS', 365)),
            late_fee_percentage=to_decimal(config.get('INSTALLMENT_LATE_FEE_PERCENTAGE', '2.0')),
            grace_period_days=int(config.get('INSTALLMENT_GRACE_PERIOD_DAYS', 7)),
            default_installment_count=int(config.get('DEFAULT_INSTALLMENT_COUNT', 12)),
        )


@dataclass
class TransitionResult:
    """Everything one transition produced, returned to the caller"""
    action: str
    source: MembershipRecord
    successor: Optional[MembershipRecord] = None
    change: Optional[Dict[str, Any]] = None
    proration: Optional[Any] = None
    payments: List[Dict[str, Any]] = field(default_factory=list)
    credit_transactions: List[Dict[str, Any]] = field(default_factory=list)
    refund_requests: List[Dict[str, Any]] = field(default_factory=list)
    commission_rules: List[Dict[str, Any]] = field(default_factory=list)
    earnings: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    events: List[Any] = field(default_factory=list)
