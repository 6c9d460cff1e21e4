from enum import Enum
from typing import Union

from ledger.errors import InvalidRankTargetError


class MembershipLevel(str, Enum):
    INTERN = "Intern"
    RANK_1 = "Rank 1"
    RANK_2 = "Rank 2"
    RANK_3 = "Rank 3"
    RANK_4 = "Rank 4"
    RANK_5 = "Rank 5"
    RANK_6 = "Rank 6"
    RANK_7 = "Rank 7"
    RANK_8 = "Rank 8"
    RANK_9 = "Rank 9"
    RANK_10 = "Rank 10"


# Enum definition order is the rank order.
RANK_ORDER: tuple[MembershipLevel, ...] = tuple(MembershipLevel)
_ORDINALS = {level: index for index, level in enumerate(RANK_ORDER)}

# First rank whose upgrade pays the income-wallet bonus.
BONUS_MIN_ORDINAL = 2


def parse_level(value: Union[str, MembershipLevel]) -> MembershipLevel:
    if isinstance(value, MembershipLevel):
        return value
    try:
        return MembershipLevel(value)
    except ValueError:
        raise InvalidRankTargetError(f"Unknown membership level: {value!r}", level=value)


def rank_ordinal(level: Union[str, MembershipLevel]) -> int:
    return _ORDINALS[parse_level(level)]


def is_higher(a: Union[str, MembershipLevel], b: Union[str, MembershipLevel]) -> bool:
    return rank_ordinal(a) > rank_ordinal(b)


def is_commission_eligible(
    earner_level: Union[str, MembershipLevel],
    ancestor_level: Union[str, MembershipLevel],
) -> bool:
    """An ancestor earns from a downline member only if that member has left
    Intern and the ancestor is ranked at or above them."""
    earner = parse_level(earner_level)
    if earner == MembershipLevel.INTERN:
        return False
    return rank_ordinal(ancestor_level) >= rank_ordinal(earner)


def next_level(level: Union[str, MembershipLevel]) -> MembershipLevel:
    ordinal = rank_ordinal(level)
    if ordinal + 1 >= len(RANK_ORDER):
        raise InvalidRankTargetError(f"{parse_level(level).value} is already the highest rank")
    return RANK_ORDER[ordinal + 1]
