from __future__ import annotations


class FlowError(RuntimeError):
    pass


class ConfigurationError(FlowError):
    """The strategy graph cannot be executed at all."""


class StepError(FlowError):
    """A node failed; the run continues along the node's fallback route."""


class CyclicTriggerError(StepError):
    def __init__(self, target_strategy_id: int, call_stack: tuple[int, ...]):
        chain = " -> ".join(str(item) for item in (*call_stack, target_strategy_id))
        super().__init__(
            f"Strategy {target_strategy_id} is already running in this call chain ({chain})."
        )
        self.target_strategy_id = target_strategy_id
        self.call_stack = call_stack


class FatalNodeError(FlowError):
    """A node failure that marks the whole execution as failed."""


class ExecutionStateError(FlowError):
    pass


class StrategyNotFoundError(ConfigurationError):
    pass
