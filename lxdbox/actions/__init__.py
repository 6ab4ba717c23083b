"""Operation planning and execution."""
from .plan import DriverCall, Hook, Operation, Step, StepKind, compose, plan
from .runner import HostHooks, PlanResult, PlanRunner

__all__ = [
    'DriverCall',
    'Hook',
    'HostHooks',
    'Operation',
    'PlanResult',
    'PlanRunner',
    'Step',
    'StepKind',
    'compose',
    'plan',
]
