"""
Pipeline Framework Module

Base classes, data containers and scheduling primitives shared by all stages.

Components:
-----------
- PipelineStage: Abstract base class for all stages
- FetchTask, FetchResult, Record: Data that flows between stages
- Frontier: Pending fetch tasks ordered by eligibility time
- Clock: Injectable time source
"""

from .stage import PipelineStage
from .pipeline_data import FetchTask, FetchResult, Record
from .frontier import Frontier
from .clock import Clock

__all__ = [
    'PipelineStage',
    'FetchTask',
    'FetchResult',
    'Record',
    'Frontier',
    'Clock',
]
