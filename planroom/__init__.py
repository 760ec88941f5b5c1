"""
Planroom Task Execution

This package drives a producer agent and a panel of reviewer agents through
bounded review rounds over a planned task, escalating to a human once the
reviewers agree or the round budget runs out. State lives in PostgreSQL.
"""

__version__ = "0.1.0"

# Configuration
from planroom.config import Settings

# Consensus calculation
from planroom.consensus import ConsensusBreakdown, consensus, evaluate_consensus
from planroom.db import Database

# Ledgers
from planroom.deliverables import DeliverableStore
from planroom.discussion import DiscussionLog, DiscussionView

# Errors
from planroom.errors import (
    ExecutionNotFoundError,
    FeedbackRequiredError,
    InsufficientParticipantsError,
    InvalidRoundBudgetError,
    InvariantViolationError,
    NoActiveReviewError,
    NoDeliverableError,
    OrchestratorError,
    RoundFailedError,
    TaskNotFoundError,
    UpstreamFailureError,
)

# Events
from planroom.events import EventEmitter, EventType, ExecutionEvent

# Generation
from planroom.generation import GenerationService, OpencodeGenerationService, TaskContext

# Core models
from planroom.models import (
    Agent,
    Deliverable,
    DiscussionMessage,
    DiscussionThread,
    ExecutionStatus,
    Task,
    TaskExecution,
    UserReview,
)

# Orchestration
from planroom.orchestrator import ExecutionView, RoundOutcome, TaskOrchestrator

# Participants
from planroom.participants import Participant, ParticipantCriteria, ParticipantDirectory

__all__ = [
    # Version
    "__version__",
    # Models
    "Agent",
    "Task",
    "TaskExecution",
    "DiscussionThread",
    "DiscussionMessage",
    "Deliverable",
    "UserReview",
    "ExecutionStatus",
    # Config
    "Settings",
    "Database",
    # Consensus
    "ConsensusBreakdown",
    "consensus",
    "evaluate_consensus",
    # Ledgers
    "DeliverableStore",
    "DiscussionLog",
    "DiscussionView",
    # Participants
    "Participant",
    "ParticipantCriteria",
    "ParticipantDirectory",
    # Generation
    "GenerationService",
    "OpencodeGenerationService",
    "TaskContext",
    # Events
    "EventEmitter",
    "EventType",
    "ExecutionEvent",
    # Orchestration
    "TaskOrchestrator",
    "ExecutionView",
    "RoundOutcome",
    # Errors
    "OrchestratorError",
    "InsufficientParticipantsError",
    "ExecutionNotFoundError",
    "TaskNotFoundError",
    "InvalidRoundBudgetError",
    "NoDeliverableError",
    "NoActiveReviewError",
    "FeedbackRequiredError",
    "UpstreamFailureError",
    "RoundFailedError",
    "InvariantViolationError",
]
