from .registry import FlowRegistry, validate_steps, PRIORITY_HIGHEST_WINS, PRIORITY_LOWEST_WINS
from .defaults import DEFAULT_FLOWS, seed_default_flows

__all__ = [
    "FlowRegistry",
    "validate_steps",
    "PRIORITY_HIGHEST_WINS",
    "PRIORITY_LOWEST_WINS",
    "DEFAULT_FLOWS",
    "seed_default_flows",
]
