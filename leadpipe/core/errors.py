"""Error taxonomy for the enrichment pipeline.

Stage-level errors (configuration, vendor rejection, delivery timeout,
delivery parse) fail the job. Per-record errors are counted and skipped.
The ``retryable`` flag drives the queue consumer's redelivery policy.
"""


class PipelineError(Exception):
    """Base exception for all pipeline errors."""

    category = "pipeline"
    retryable = False


class ConfigurationError(PipelineError):
    """Raised when required configuration or credentials are missing.

    Examples:
    - Vendor API key not set
    - Judge provider API key not set
    - Unknown object store backend
    """

    category = "configuration"


class VendorRejectedError(PipelineError):
    """Raised when a vendor API refuses a request."""

    category = "vendor_rejected"

    def __init__(
        self, status_code: int, body: str, action: str = "Vendor scrape trigger"
    ) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"{action} failed: {status_code} - {body}")


class VendorUnavailableError(PipelineError):
    """Raised when the vendor API cannot be reached (connection error, timeout)."""

    category = "vendor_unavailable"
    retryable = True


class DeliveryTimeoutError(PipelineError):
    """Raised when the delivery object never appears within the attempt budget."""

    category = "delivery_timeout"
    retryable = True


class DeliveryParseError(PipelineError):
    """Raised when a delivery object cannot be decompressed, decoded or parsed.

    Treated as a permanent vendor contract break for that snapshot.
    """

    category = "delivery_parse"


class ReconciliationError(PipelineError):
    """Raised when a delivered record cannot be matched to a profile."""

    category = "reconciliation"


class JudgeResponseError(PipelineError):
    """Raised when the AI judge returns no usable JSON score."""

    category = "judge_response"


class InvalidStateTransition(PipelineError):
    """Raised when a job attempts an illegal state transition."""

    category = "state"
