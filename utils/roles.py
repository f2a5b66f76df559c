from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Optional


class Role(str, Enum):
    SUPER_ADMIN = "super_admin"
    PLATFORM_ADMIN = "platform_admin"
    SCHOOL_ADMIN = "school_admin"
    SCHOOL_STAFF = "school_staff"
    PARENT = "parent"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["Role"]:
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return None


class Capability(str, Enum):
    PAY_FEES = "pay_fees"
    VIEW_OWN_STUDENTS = "view_own_students"
    VIEW_SCHOOL_FEE_RATES = "view_school_fee_rates"
    PROPOSE_SCHOOL_FEE_RATE = "propose_school_fee_rate"
    DECIDE_SCHOOL_FEE_RATE = "decide_school_fee_rate"
    MIGRATE_PAYMENT_PLANS = "migrate_payment_plans"
    VIEW_PLATFORM_FEE_RATES = "view_platform_fee_rates"
    PROPOSE_PLATFORM_FEE_RATE = "propose_platform_fee_rate"
    DECIDE_PLATFORM_FEE_RATE = "decide_platform_fee_rate"


_PLATFORM = frozenset(
    {
        Capability.VIEW_PLATFORM_FEE_RATES,
        Capability.PROPOSE_PLATFORM_FEE_RATE,
        Capability.DECIDE_PLATFORM_FEE_RATE,
    }
)

ROLE_CAPABILITIES: Dict[Role, FrozenSet[Capability]] = {
    Role.SUPER_ADMIN: _PLATFORM,
    Role.PLATFORM_ADMIN: _PLATFORM,
    Role.SCHOOL_ADMIN: frozenset(
        {
            Capability.VIEW_SCHOOL_FEE_RATES,
            Capability.PROPOSE_SCHOOL_FEE_RATE,
            Capability.DECIDE_SCHOOL_FEE_RATE,
            Capability.MIGRATE_PAYMENT_PLANS,
        }
    ),
    # Staff may review and decide on proposals but not originate them.
    Role.SCHOOL_STAFF: frozenset(
        {
            Capability.VIEW_SCHOOL_FEE_RATES,
            Capability.DECIDE_SCHOOL_FEE_RATE,
        }
    ),
    Role.PARENT: frozenset({Capability.PAY_FEES, Capability.VIEW_OWN_STUDENTS}),
}


def capabilities_for(role: Optional[Role]) -> FrozenSet[Capability]:
    if role is None:
        return frozenset()
    return ROLE_CAPABILITIES[role]


def has_capability(role: Optional[Role], capability: Capability) -> bool:
    return capability in capabilities_for(role)


def is_platform_role(role: Optional[Role]) -> bool:
    return role in (Role.SUPER_ADMIN, Role.PLATFORM_ADMIN)


def is_school_role(role: Optional[Role]) -> bool:
    return role in (Role.SCHOOL_ADMIN, Role.SCHOOL_STAFF)
