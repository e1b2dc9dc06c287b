"""Approval workflow module.

Provides:
- Deduplicated admin notifications for payments, media requests and expiries
- The decision state machine driven by inline keyboard callbacks
- Media request status polling and cascading deletes
- The bot poll loop and its single-instance lock

Usage:
    from src.workflow import WorkflowEngine

    engine = WorkflowEngine(store)
    await engine.run(stop_event)
"""

from src.workflow.commands import (
    ApproveMedia,
    ApprovePayment,
    ChooseRoot,
    Command,
    RejectMedia,
    RejectPayment,
    UnknownCommand,
    encode_command,
    parse_command,
)
from src.workflow.decisions import DecisionHandler
from src.workflow.engine import WorkflowEngine
from src.workflow.errors import (
    InvalidStateError,
    RecordNotFoundError,
    ServiceNotConfiguredError,
    UpstreamError,
    WorkflowError,
)
from src.workflow.lock import InstanceLock
from src.workflow.media import MediaRequestService
from src.workflow.notifier import NotificationDispatcher
from src.workflow.payments import PaymentService

__all__ = [
    "ApproveMedia",
    "ApprovePayment",
    "ChooseRoot",
    "Command",
    "DecisionHandler",
    "InstanceLock",
    "InvalidStateError",
    "MediaRequestService",
    "NotificationDispatcher",
    "PaymentService",
    "RecordNotFoundError",
    "RejectMedia",
    "RejectPayment",
    "ServiceNotConfiguredError",
    "UnknownCommand",
    "UpstreamError",
    "WorkflowError",
    "WorkflowEngine",
    "encode_command",
    "parse_command",
]
