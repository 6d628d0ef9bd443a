"""Services module - Business logic layer"""

from .config_manager import AgentSettings, ConfigManager
from .confirmation_gate import ConfirmationGate, GateState
from .context_assembler import ContextAssembler
from .context_optimizer import ContextConfig, ContextWindowOptimizer, OptimizedContext
from .conversation_engine import ConversationEngine
from .diff_generator import DiffGenerator
from .filesystem import FileSystem, LocalFileSystem
from .intent_recognizer import IntentRecognizer
from .llm_service import LLMService
from .response_processor import ResponseProcessor
from .retry import RetryPolicy
from .rules import get_rule_text
from .streaming_session import StreamingSession
from .text_matcher import TextMatcher
from .tools import DefaultToolExecutor

__all__ = [
    "AgentSettings",
    "ConfigManager",
    "ConfirmationGate",
    "GateState",
    "ContextAssembler",
    "ContextConfig",
    "ContextWindowOptimizer",
    "OptimizedContext",
    "ConversationEngine",
    "DiffGenerator",
    "FileSystem",
    "LocalFileSystem",
    "IntentRecognizer",
    "LLMService",
    "ResponseProcessor",
    "RetryPolicy",
    "get_rule_text",
    "StreamingSession",
    "TextMatcher",
    "DefaultToolExecutor",
]
