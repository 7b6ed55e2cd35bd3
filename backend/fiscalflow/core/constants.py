"""Shared constants and enums used across the application."""

from enum import StrEnum


class JobStatus(StrEnum):
    """Overall status of a job."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatus(StrEnum):
    """Status of an individual pipeline step."""

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"


class StageName(StrEnum):
    """The six stages of the fiscal document pipeline."""

    EXTRACTION = "extraction"
    VALIDATION = "validation"
    AUDIT = "audit"
    CLASSIFICATION = "classification"
    ANALYSIS = "analysis"
    INDEXING = "indexing"


class EventName(StrEnum):
    """Event names carried on the event bus."""

    TASK_START = "task:start"
    TASK_COMPLETED = "task:completed"
    TASK_FAILED = "task:failed"
    TOOL_RUN = "tool:run"
    TOOL_COMPLETED = "orchestrator:tool_completed"


class ToolCallState(StrEnum):
    """Lifecycle of a suspended tool call."""

    AWAITING_TOOL = "awaiting_tool"
    RESUMED = "resumed"


class FileFormat(StrEnum):
    """Detected source document formats."""

    TEXT = "text"
    XML = "xml"
    JSON = "json"
    CSV = "csv"
    UNKNOWN = "unknown"


class RiskLevel(StrEnum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


class OperationType(StrEnum):
    PURCHASE = "purchase"
    SALE = "sale"
    SERVICE = "service"
    UNKNOWN = "unknown"


class Sector(StrEnum):
    AGRIBUSINESS = "agribusiness"
    INDUSTRY = "industry"
    RETAIL = "retail"
    TRANSPORT = "transport"
    OTHER = "other"


class RegistrationStatus(StrEnum):
    """Outcome of a CNPJ registry lookup as seen by the audit stage."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"


class TaxRegime(StrEnum):
    """Brazilian corporate tax regimes accepted by the tax simulation tool."""

    LUCRO_REAL = "Lucro Real"
    LUCRO_PRESUMIDO = "Lucro Presumido"
    SIMPLES_NACIONAL = "Simples Nacional"


class ExecutionMode(StrEnum):
    """Where submitted jobs are executed."""

    INLINE = "inline"
    CELERY = "celery"
