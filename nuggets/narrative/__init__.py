"""
Narrative graph: one node per ready nugget, with ranked choices between nodes.
"""

from nuggets.narrative.choice_generator import ChoiceGenerator
from nuggets.narrative.node_generator import NodeGenerator

__all__ = ["ChoiceGenerator", "NodeGenerator"]
