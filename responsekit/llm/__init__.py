"""
Request Orchestration Layer.

Turns a logical request into calls against the remote response API and
resolves tool-call exchanges to a final answer:

    RequestBuilder(...).build()  →  RequestConfig
                                        ↓
    RequestOrchestrator.execute(config)
                                        ↓
                                      Result  →  success / failed / in_progress

Key responsibilities:
- Admit one live attempt per correlation key (via DeduplicationGuard)
- Reuse or create the user's remote conversation
- Build the provider payload (formats, attachments, retrieval tool)
- Run a bounded tool-call loop and audit every round
- Classify remote failures, retrying once on an expired conversation
"""

from responsekit.llm.conversations import ConversationManager
from responsekit.llm.models import (
    Attachment,
    AttachmentKind,
    FailureKind,
    RequestBuilder,
    RequestConfig,
    ResponseFormat,
    Result,
    ResultStatus,
    UnsupportedAttachmentError,
    upload_attachment,
)
from responsekit.llm.orchestrator import RequestOrchestrator

__all__ = [
    "RequestOrchestrator",
    "RequestBuilder",
    "RequestConfig",
    "Result",
    "ResultStatus",
    "FailureKind",
    "ResponseFormat",
    "Attachment",
    "AttachmentKind",
    "UnsupportedAttachmentError",
    "ConversationManager",
    "upload_attachment",
]
