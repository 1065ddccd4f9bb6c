"""
State machine for pipeline run status transitions.

A run is created as "started" and closed exactly once as "completed" or
"failed". Closed runs are immutable.
"""
from typing import Optional, Set, Tuple


class RunLifecycle:
    """
    Validates pipeline run status transitions.

    Transition rules:
    - None -> started: Allowed (new run)
    - started -> completed | failed: Allowed (single close)
    - started -> started: Rejected (already running)
    - completed | failed -> Any: Rejected (immutable)
    """

    OPEN: Set[str] = {'started'}
    TERMINAL: Set[str] = {'completed', 'failed'}

    def __init__(self):
        self.all_statuses = self.OPEN | self.TERMINAL

    def validate_transition(
        self,
        current_status: Optional[str],
        new_status: str
    ) -> Tuple[bool, Optional[str]]:
        """
        Validate if a status transition is allowed.

        Args:
            current_status: Current run status (None if the run doesn't exist yet)
            new_status: Proposed status

        Returns:
            Tuple of (is_valid, reason); reason explains a rejection
        """
        if new_status not in self.all_statuses:
            return False, f"Invalid target status: {new_status}"

        if current_status is None:
            if new_status in self.OPEN:
                return True, None
            return False, f"Run must start as 'started', not {new_status}"

        if current_status not in self.all_statuses:
            return False, f"Invalid current status: {current_status}"

        if current_status in self.TERMINAL:
            return False, f"Run already closed as {current_status}"

        if new_status in self.OPEN:
            return False, "Run is already started"

        return True, None

    def is_terminal(self, status: str) -> bool:
        return status in self.TERMINAL
