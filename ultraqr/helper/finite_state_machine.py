from enum import Enum
from typing import Dict, Optional


class State(Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    ENROLLING = "enrolling"
    VERIFYING = "verifying"
    DONE = "done"
    FAILED = "failed"


WORKING_STATES = {State.INITIALIZING, State.ENROLLING, State.VERIFYING}


class BaseStateMachine:
    def __init__(self):
        self._state = State.IDLE
        self._transitions: Dict[State, set] = {
            State.IDLE: WORKING_STATES | {State.FAILED},
            State.INITIALIZING: {State.DONE, State.FAILED},
            State.ENROLLING: {State.DONE, State.FAILED},
            State.VERIFYING: {State.DONE, State.FAILED},
        }
        self.current_context: Optional[dict] = None

    @property
    def state(self) -> State:
        return self._state

    @property
    def finished(self) -> bool:
        return self._state in (State.DONE, State.FAILED)

    def transition(self, new_state: State, context: dict = None) -> bool:
        if new_state in self._transitions.get(self._state, set()):
            self._state = new_state
            self.current_context = context or {}
            return True
        return False

    def reset(self):
        self._state = State.IDLE
        self.current_context = None
