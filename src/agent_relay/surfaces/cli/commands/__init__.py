from .run import register_run_commands
from .sandbox import register_sandbox_commands
from .state import register_state_commands

__all__ = [
    "register_run_commands",
    "register_sandbox_commands",
    "register_state_commands",
]
