"""Phase edit permissions.

Only the question "may this actor edit orders into this phase?" is answered
here. Who the actor is and how their permissions are stored is up to the
caller.
"""

from typing import Iterable, Protocol, runtime_checkable

from orderflow.services.orders.enums import Phase


@runtime_checkable
class PhaseAuthorizer(Protocol):
    def can_edit_phase(self, phase: Phase) -> bool:
        ...


class AllowAllPhases:
    """Authorizer that permits every phase."""

    def can_edit_phase(self, phase: Phase) -> bool:
        return True


class StaticPhasePermissions:
    """Authorizer backed by a fixed set of editable phases."""

    def __init__(self, phases: Iterable[Phase]):
        self.phases = frozenset(p if isinstance(p, Phase) else Phase.from_string(p) for p in phases)

    def can_edit_phase(self, phase: Phase) -> bool:
        return phase in self.phases

    def __repr__(self) -> str:
        return f"<StaticPhasePermissions({sorted(p.value for p in self.phases)})>"
