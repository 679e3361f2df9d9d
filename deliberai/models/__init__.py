from .circuit_breaker_state import CircuitBreakerState
from .prompt_template import PromptTemplate
from .ibis_node import IbisNode, NodeType
from .agent_knowledge import AgentKnowledge

__all__ = [
    "CircuitBreakerState",
    "PromptTemplate",
    "IbisNode",
    "NodeType",
    "AgentKnowledge",
]
