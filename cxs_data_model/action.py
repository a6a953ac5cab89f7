from dataclasses import dataclass, field
from typing import Any, Dict

# Results reported by action executors, combined bitwise by callers.
NO_CHANGE = 0
SESSION_UPDATED = 1
PROFILE_UPDATED = 2


@dataclass
class Action:
    """An action invocation: the action type id plus its parameter values."""
    action_type_id: str
    parameter_values: Dict[str, Any] = field(default_factory=dict)

    def get_parameter(self, name: str, default: Any = None) -> Any:
        return self.parameter_values.get(name, default)
