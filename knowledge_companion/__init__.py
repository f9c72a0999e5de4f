"""Knowledge Companion - study guide agent with tools and long-term memory."""

__version__ = "0.1.0"

from knowledge_companion.config import Config
from knowledge_companion.agent import ChatResponse, ConversationAgent, create_agent

__all__ = ["ChatResponse", "Config", "ConversationAgent", "create_agent", "__version__"]
