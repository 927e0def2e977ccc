"""Order fulfillment state machine.

Administrative fulfillment follows a strict graph:

    pending -> processing | cancelled
    processing -> shipped | cancelled
    shipped -> delivered

``delivered`` and ``cancelled`` are terminal. Payment reconciliation and the
permissive status endpoint do not go through this module; they only need
the target status to be one of the known values.
"""

from typing import Any, Callable, Dict, Optional

from src.core.logging import get_logger
from src.database.models.order import OrderStatus

logger = get_logger(__name__)

ORDER_TRANSITIONS: Dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


class StateTransitionError(Exception):
    """Raised when an invalid state transition is attempted."""

    def __init__(
        self,
        message: str,
        current_state: OrderStatus,
        target_state: OrderStatus,
        **context: Any,
    ):
        super().__init__(message)
        self.current_state = current_state
        self.target_state = target_state
        self.context = context


class TransitionGuardError(StateTransitionError):
    """Raised when an allowed transition is missing required data."""

    pass


def get_allowed_transitions(status: OrderStatus) -> frozenset[OrderStatus]:
    """Statuses reachable from ``status`` in one step."""
    return ORDER_TRANSITIONS.get(status, frozenset())


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in get_allowed_transitions(current)


class OrderStateMachine:
    """Validates administrative fulfillment transitions.

    Guards run after the graph check and receive the transition data
    (tracking number, carrier...) supplied by the caller.
    """

    def __init__(self) -> None:
        self._transition_guards: Dict[
            tuple[OrderStatus, OrderStatus],
            Callable[[Dict[str, Any]], Optional[str]],
        ] = {
            (OrderStatus.PROCESSING, OrderStatus.SHIPPED): self._guard_shipment,
        }

    @staticmethod
    def _guard_shipment(data: Dict[str, Any]) -> Optional[str]:
        tracking_number = (data.get("tracking_number") or "").strip()
        if not tracking_number:
            return "Tracking number is required when shipping an order"
        return None

    def validate_transition(
        self,
        current_status: OrderStatus,
        target_status: OrderStatus,
        **data: Any,
    ) -> None:
        """Validate that ``current_status -> target_status`` may be applied.

        Raises:
            StateTransitionError: If the graph does not allow the transition
            TransitionGuardError: If a guard rejects the transition data
        """
        if not can_transition(current_status, target_status):
            allowed = sorted(s.value for s in get_allowed_transitions(current_status))
            logger.warning(
                "Rejected order status transition",
                current_status=current_status.value,
                target_status=target_status.value,
                allowed_transitions=allowed,
            )
            raise StateTransitionError(
                f"Cannot transition from {current_status.value} to "
                f"{target_status.value}",
                current_state=current_status,
                target_state=target_status,
                allowed_transitions=allowed,
            )

        guard = self._transition_guards.get((current_status, target_status))
        if guard is not None:
            failure = guard(data)
            if failure:
                raise TransitionGuardError(
                    failure,
                    current_state=current_status,
                    target_state=target_status,
                )
