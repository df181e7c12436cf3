"""
Directed, per-pair trust.

TrustStore owns the (truster, trustee) -> level edges. A missing edge reads
as level 0, which no item ever accepts. TrustRequestWorkflow lets a user ask
someone for trust; the only way such a request gets approved is the target
setting a trust edge toward the requester, so the requester never chooses
their own level and never learns which level was granted.
"""

from typing import Dict, List, Optional, Tuple

from errors import IllegalTransition, NotFound, SelfTrust, Unauthorized
from logger import get_logger
from repository import Repository
from schemas import (
    Connection,
    RequestStatus,
    TrustEdge,
    TrustRequest,
    UserSummary,
    check_request_transition,
    validate_level,
)

logger = get_logger("trustshelf.trust")

NO_TRUST = 0


class TrustStore:
    def __init__(self, repo: Repository):
        self.repo = repo

    async def set_trust(self, truster_id: str, trustee_id: str, level) -> TrustEdge:
        """Create or overwrite the truster's edge toward trustee.

        Any pending trust request from trustee to truster is approved as a
        side effect.
        """
        level = validate_level(level)
        if truster_id == trustee_id:
            raise SelfTrust("You cannot assign a trust level to yourself", {"user_id": truster_id})
        edge = await self.repo.upsert_trust(truster_id, trustee_id, level)
        resolved = await self.repo.resolve_pending_trust_requests(
            requester_id=trustee_id, target_id=truster_id, to_status=RequestStatus.APPROVED
        )
        logger.info(f"trust set truster={truster_id} trustee={trustee_id} resolved_requests={resolved}")
        return edge

    async def get_trust(self, truster_id: str, trustee_id: str) -> int:
        edge = await self.repo.get_trust_edge(truster_id, trustee_id)
        return edge.level if edge else NO_TRUST

    async def list_trustees(self, truster_id: str) -> List[Tuple[str, int]]:
        edges = await self.repo.list_trust_edges(truster_id=truster_id)
        return [(e.trustee_id, e.level) for e in edges]

    async def levels_toward(self, trustee_id: str) -> Dict[str, int]:
        """Batch form of get_trust for one trustee: {truster_id: level}.

        Trusters missing from the mapping have no edge, i.e. level 0.
        """
        edges = await self.repo.list_trust_edges(trustee_id=trustee_id)
        return {e.truster_id: e.level for e in edges}

    async def list_connections(self, truster_id: str) -> List[Connection]:
        edges = await self.repo.list_trust_edges(truster_id=truster_id)
        users = await self.repo.get_users([e.trustee_id for e in edges])
        return [
            Connection(
                trustee=UserSummary.from_user(users.get(e.trustee_id), e.trustee_id),
                level=e.level,
                updated_at=e.updated_at,
            )
            for e in edges
        ]


class TrustRequestWorkflow:
    def __init__(self, repo: Repository):
        self.repo = repo

    async def request(self, requester_id: str, target_id: str, message: Optional[str] = None) -> TrustRequest:
        if requester_id == target_id:
            raise SelfTrust("You cannot request trust from yourself", {"user_id": requester_id})
        if await self.repo.get_user(target_id) is None:
            raise NotFound("User not found", {"user_id": target_id})
        req = await self.repo.insert_trust_request(
            TrustRequest(requester_id=requester_id, target_id=target_id, message=message or None)
        )
        logger.info(f"trust request created id={req.id} requester={requester_id} target={target_id}")
        return req

    async def deny(self, request_id: str, actor_id: str) -> TrustRequest:
        req = await self.repo.get_trust_request(request_id)
        if req is None:
            raise NotFound("Trust request not found", {"request_id": request_id})
        if req.target_id != actor_id:
            logger.warning(f"trust request deny refused id={request_id} actor={actor_id}")
            raise Unauthorized("Only the recipient can deny this request", {"request_id": request_id})
        check_request_transition("Trust request", req.status, RequestStatus.DENIED)
        denied = await self.repo.transition_trust_request(request_id, RequestStatus.PENDING, RequestStatus.DENIED)
        if denied is None:
            # resolved concurrently
            raise IllegalTransition("Trust request is no longer pending", {"request_id": request_id})
        logger.info(f"trust request denied id={request_id}")
        return denied

    async def received(self, target_id: str, pending_only: bool = False) -> List[TrustRequest]:
        status = RequestStatus.PENDING if pending_only else None
        return await self.repo.list_trust_requests(target_id=target_id, status=status)

    async def sent(self, requester_id: str) -> List[TrustRequest]:
        return await self.repo.list_trust_requests(requester_id=requester_id)
