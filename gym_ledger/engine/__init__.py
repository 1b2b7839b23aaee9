# Membership lifecycle & billing engine
from .errors import (
    LedgerError, InvalidTransition, InvalidPackage, InvalidCommission, ValidationError,
    NotFound, ConflictError, StoreError, TransitionFailed, PartiallyApplied,
)
from .types import (
    MembershipStatus, TransitionAction, ProrationPolicy, CommissionType, InstallmentFrequency,
    RefundMethod, EngineSettings, TransitionResult, money,
)
from .state_machine import MembershipStateMachine, TRANSITIONS
from .proration import ProrationCalculator, ProrationResult, calculate_proration
from .commission import CommissionCalculator, CommissionResult, calculate_commission
from .installments import InstallmentPlanner, InstallmentSchedule, plan_installments
from .saga import Saga
from .events import EventBus, Event, LifecycleEvents
from .store import LedgerStore
from .orchestrator import LifecycleOrchestrator
from .billing import BillingService, PaymentResult
from .scheduling import SessionScheduler
