"""
DevRunner QA Gates Package

Command gates (BUILD, UNIT, BDD) and static analysis gates (REVIEW, SECURITY).
"""

from importlib import import_module
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from devrunner.qa.gates.interface import Gate, GateContext, GateResult
    from devrunner.qa.gates.commands import CommandGate, CommandResult, run_allowed_command
    from devrunner.qa.gates.static import ReviewGate, SecurityGate, StaticAnalysisGate

__all__ = [
    # Interface
    "Gate",
    "GateContext",
    "GateResult",
    # Command gates
    "CommandGate",
    "CommandResult",
    "run_allowed_command",
    # Static gates
    "StaticAnalysisGate",
    "ReviewGate",
    "SecurityGate",
]

_EXPORTS = {
    "Gate": "devrunner.qa.gates.interface",
    "GateContext": "devrunner.qa.gates.interface",
    "GateResult": "devrunner.qa.gates.interface",
    "CommandGate": "devrunner.qa.gates.commands",
    "CommandResult": "devrunner.qa.gates.commands",
    "run_allowed_command": "devrunner.qa.gates.commands",
    "StaticAnalysisGate": "devrunner.qa.gates.static",
    "ReviewGate": "devrunner.qa.gates.static",
    "SecurityGate": "devrunner.qa.gates.static",
}


def __getattr__(name: str):
    module_path = _EXPORTS.get(name)
    if not module_path:
        raise AttributeError(f"module {__name__} has no attribute {name}")
    module = import_module(module_path)
    return getattr(module, name)


def __dir__() -> list:
    return sorted(__all__)
