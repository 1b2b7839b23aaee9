# Models package
from .member import Member
from .package import MembershipPackage
from .membership import Membership, MembershipChange
from .trainer import Trainer, TrainingSession
from .commission import CommissionRule, TrainerEarning
from .finance import Payment, CreditTransaction, RefundRequest, PaymentPlan, Installment
