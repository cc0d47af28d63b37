# coding=utf-8

from .context_buffer import ContextBuffer, join_context, truncate_context
from .recognition import LanguageConfig, RecognitionBackend, RecognitionConnection, RecognitionEvent, RecognitionStream, StreamState
from .recreation_policy import RECREATION_MODES, RecreationDecision, RecreationPolicy
from .retry import RecoveryBudget, RetryPolicy
from .session import SessionSettings, SessionState, StreamSession
from .session_policy import DURATION_LIMIT_REASON, SessionPolicy, SessionPolicyDecision
from .transcript_log import FinalSentence, TranscriptEvent, TranscriptLog, TranslationResult

__all__ = [
    "ContextBuffer",
    "DURATION_LIMIT_REASON",
    "FinalSentence",
    "LanguageConfig",
    "RECREATION_MODES",
    "RecognitionBackend",
    "RecognitionConnection",
    "RecognitionEvent",
    "RecognitionStream",
    "RecoveryBudget",
    "RecreationDecision",
    "RecreationPolicy",
    "RetryPolicy",
    "SessionPolicy",
    "SessionPolicyDecision",
    "SessionSettings",
    "SessionState",
    "StreamSession",
    "StreamState",
    "TranscriptEvent",
    "TranscriptLog",
    "TranslationResult",
    "join_context",
    "truncate_context",
]
