"""Signal governance and co-pilot module."""

from perpsim.strategy.copilot import CoPilot, build_signal
from perpsim.strategy.governor import GovernorAction, GovernorDecision, SignalGovernor
from perpsim.strategy.heuristic import analyze as heuristic_analyze

__all__ = [
    "CoPilot",
    "build_signal",
    "GovernorAction",
    "GovernorDecision",
    "SignalGovernor",
    "heuristic_analyze",
]
