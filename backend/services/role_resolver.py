"""Clinic role resolution.

A caller's EMR role inside a clinic is found by trying resolver strategies in
order and taking the first one that answers:

1. StaffRecordResolver - an active clinic_staff record
2. ClinicOwnerResolver - the clinic owner is an implicit admin

Strategies depend only on small lookup callables, so the chain can be tested
without any directory behind it.
"""
from typing import Awaitable, Callable, Optional, Sequence
import logging

from models import ClinicRole

logger = logging.getLogger(__name__)

StaffRoleLookup = Callable[[str, str], Awaitable[Optional[str]]]
OwnerLookup = Callable[[str], Awaitable[Optional[str]]]


class RoleResolver:
    """One strategy. Returns a role or None to defer to the next strategy."""
    name = "base"

    async def resolve(self, clinic_id: str, user_id: str) -> Optional[ClinicRole]:
        raise NotImplementedError


class StaffRecordResolver(RoleResolver):
    name = "staff_record"

    def __init__(self, lookup_role: StaffRoleLookup):
        self._lookup_role = lookup_role

    async def resolve(self, clinic_id: str, user_id: str) -> Optional[ClinicRole]:
        role = await self._lookup_role(clinic_id, user_id)
        if not role:
            return None
        try:
            return ClinicRole(str(role).lower())
        except ValueError:
            # Staff roles outside the EMR role set get no EMR access
            logger.warning(
                "Unrecognised staff role ignored: clinic_id=%s user_id=%s role=%s",
                clinic_id, user_id, role,
            )
            return None


class ClinicOwnerResolver(RoleResolver):
    name = "clinic_owner"

    def __init__(self, lookup_owner: OwnerLookup):
        self._lookup_owner = lookup_owner

    async def resolve(self, clinic_id: str, user_id: str) -> Optional[ClinicRole]:
        owner_id = await self._lookup_owner(clinic_id)
        if owner_id is not None and str(owner_id) == str(user_id):
            return ClinicRole.ADMIN
        return None


class RoleResolutionChain:
    def __init__(self, resolvers: Sequence[RoleResolver]):
        self.resolvers = tuple(resolvers)

    async def resolve(self, clinic_id: str, user_id: str) -> Optional[ClinicRole]:
        for resolver in self.resolvers:
            role = await resolver.resolve(clinic_id, user_id)
            if role is not None:
                logger.debug(
                    "Role resolved: clinic_id=%s user_id=%s role=%s via=%s",
                    clinic_id, user_id, role.value, resolver.name,
                )
                return role
        return None


def build_default_role_chain(staff_directory, clinic_directory) -> RoleResolutionChain:
    return RoleResolutionChain([
        StaffRecordResolver(staff_directory.get_active_role),
        ClinicOwnerResolver(clinic_directory.get_owner_id),
    ])
