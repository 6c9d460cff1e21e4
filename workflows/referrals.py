from collections import deque
from typing import Iterator, Optional
from uuid import UUID

from ledger.errors import ReferralCycleError
from ledger.models import (
    CommissionLevel,
    DownlineLevel,
    DownlineMember,
    DownlineView,
)
from ledger.storage import InMemoryStorage

HOP_LEVELS = (CommissionLevel.A, CommissionLevel.B, CommissionLevel.C)


class ReferralIndex:
    """Bounded walks over the child -> parent referral index."""

    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    def ancestors(self, account_id: UUID, max_hops: int = len(HOP_LEVELS)) -> Iterator[tuple[int, UUID]]:
        """Yield ``(hop, ancestor_id)`` starting at the direct referrer, hop 1."""
        seen = {account_id}
        current: Optional[UUID] = self.storage.parents.get(account_id)
        hop = 1
        while current is not None and hop <= max_hops:
            if current in seen:
                raise ReferralCycleError(
                    f"Referral chain of {account_id} loops back through {current}",
                    account_id=str(account_id),
                )
            seen.add(current)
            yield hop, current
            current = self.storage.parents.get(current)
            hop += 1

    def would_create_cycle(self, account_id: UUID, referrer_id: UUID) -> bool:
        if account_id == referrer_id:
            return True
        current: Optional[UUID] = referrer_id
        while current is not None:
            if current == account_id:
                return True
            current = self.storage.parents.get(current)
        return False

    def direct_referrals(self, account_id: UUID) -> list[UUID]:
        with self.storage.lock:
            return list(self.storage.children.get(account_id, []))

    def downline(self, account_id: UUID, max_depth: Optional[int] = None) -> Iterator[tuple[int, UUID]]:
        """Breadth-first ``(depth, member_id)`` over the whole downline."""
        seen = {account_id}
        queue = deque((1, child) for child in self.direct_referrals(account_id))
        while queue:
            depth, member_id = queue.popleft()
            if max_depth is not None and depth > max_depth:
                continue
            if member_id in seen:
                raise ReferralCycleError(
                    f"Downline of {account_id} revisits {member_id}", account_id=str(account_id)
                )
            seen.add(member_id)
            yield depth, member_id
            queue.extend((depth + 1, child) for child in self.direct_referrals(member_id))

    def downline_view(self, account_id: UUID) -> DownlineView:
        self.storage.account(account_id)
        levels: dict[CommissionLevel, list[DownlineMember]] = {level: [] for level in HOP_LEVELS}
        network_size = 0
        for depth, member_id in self.downline(account_id):
            network_size += 1
            if depth > len(HOP_LEVELS):
                continue
            member = self.storage.account(member_id)
            levels[HOP_LEVELS[depth - 1]].append(
                DownlineMember(
                    account_id=member.id,
                    membership_level=member.membership_level,
                    referrer_id=member.referrer_id,
                    joined_at=member.created_at,
                )
            )
        return DownlineView(
            account_id=account_id,
            levels={level: DownlineLevel(count=len(members), members=members) for level, members in levels.items()},
            total=sum(len(members) for members in levels.values()),
            network_size=network_size,
        )
