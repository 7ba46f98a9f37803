"""Exception hierarchy for keel.

All pipeline exceptions inherit from KeelError so callers can catch every
pipeline failure with a single except clause. Each error carries the exit
code the CLI uses when the error ends a run.

Exception Hierarchy:
    KeelError (base)
    ├── ConfigurationError          # Invalid keel.yaml or trigger input
    │   └── UnwatchedBranchError    # Trigger on a branch that is not watched
    ├── SecretNotFoundError         # Secret missing from the secret store
    ├── BuildError                  # Build or image assembly failed (non-retryable)
    ├── ScanFailure                 # Scan gate blocked the run
    ├── ScannerError                # Scanner could not produce a result
    │   ├── ScannerUnavailableError # Transient scanner infrastructure error
    │   └── ScannerInvocationError  # Scanner ran but failed (non-retryable)
    ├── SignatureError              # Signing or verification failed (never retried)
    │   └── KeyLoadError            # Key material could not be loaded
    ├── ConcurrentLockError         # Namespace or signing lock not acquired
    ├── RegistryError               # Registry push/resolve failed (transient)
    ├── ImageNotFoundError          # Tag not present in the registry
    ├── ImmutabilityViolationError  # Tag already bound to another digest
    ├── DeployError                 # Cluster apply failed
    ├── ApprovalTimeoutError        # Approval not recorded within the wait window
    ├── StageTimeoutError           # A pipeline step exceeded its timeout
    ├── PromotionGateError          # Upstream stage gate did not hold
    └── InvalidRunStateError        # Operation not valid for the run's state

Exit Codes:
    0  - Success
    1  - General error (KeelError)
    2  - Configuration error
    3  - Build error
    4  - Scan gate failure / scanner error
    6  - Signature error
    7  - Lock not acquired
    8  - Registry error
    9  - Immutable tag violation
    10 - Deploy error
    11 - Approval timeout
    12 - Step timeout
    13 - Promotion gate failed
    14 - Invalid run state

Example:
    >>> from keel_core.errors import BuildError
    >>> raise BuildError("mvn clean package", "compilation failed", returncode=1)
    Traceback (most recent call last):
        ...
    BuildError: Build step 'mvn clean package' failed (exit 1): compilation failed
"""

from __future__ import annotations


class KeelError(Exception):
    """Base exception for all keel errors.

    Attributes:
        exit_code: CLI exit code for this error type (default: 1).
    """

    exit_code: int = 1


class ConfigurationError(KeelError):
    """Raised when pipeline configuration or trigger input is invalid."""

    exit_code: int = 2


class UnwatchedBranchError(ConfigurationError):
    """Raised when a trigger arrives for a branch the pipeline does not watch.

    Attributes:
        branch: The normalized branch name.
        watched: Branches the pipeline is configured to watch.
    """

    def __init__(self, branch: str, watched: list[str]) -> None:
        self.branch = branch
        self.watched = watched
        super().__init__(
            f"Branch '{branch}' is not watched (watched: {', '.join(watched)})"
        )


class SecretNotFoundError(KeelError):
    """Raised when a secret cannot be found in the secret store.

    Attributes:
        name: Logical secret name.
        source: Where the store looked (env var name, mapping, ...).
    """

    exit_code: int = 2

    def __init__(self, name: str, source: str | None = None) -> None:
        self.name = name
        self.source = source
        msg = f"Secret not found: {name}"
        if source:
            msg += f" (looked in {source})"
        super().__init__(msg)


class BuildError(KeelError):
    """Raised when the build or image assembly fails.

    Build failures are never retried: the source has to change.

    Attributes:
        step: The command or step that failed.
        reason: Description of the failure (usually tool stderr).
        returncode: Process exit code, if the tool ran.
    """

    exit_code: int = 3

    def __init__(self, step: str, reason: str, returncode: int | None = None) -> None:
        self.step = step
        self.reason = reason
        self.returncode = returncode
        msg = f"Build step '{step}' failed"
        if returncode is not None:
            msg += f" (exit {returncode})"
        super().__init__(f"{msg}: {reason}")


class ScanFailure(KeelError):
    """Raised when the scan gate blocks a run.

    The run can only proceed after the findings are remediated upstream.

    Attributes:
        target: Scan target (source path or image reference).
        reason: Why the gate failed.
        blocking: Finding IDs at or above the threshold.
    """

    exit_code: int = 4

    def __init__(self, target: str, reason: str, blocking: list[str] | None = None) -> None:
        self.target = target
        self.reason = reason
        self.blocking = blocking or []
        msg = f"Scan gate failed for {target}: {reason}"
        if self.blocking:
            preview = ", ".join(self.blocking[:5])
            if len(self.blocking) > 5:
                preview += f" (and {len(self.blocking) - 5} more)"
            msg += f". Blocking: {preview}"
        super().__init__(msg)


class ScannerError(KeelError):
    """Base class for scanners that could not produce a result.

    Attributes:
        scanner: Scanner name (trivy, grype, ...).
        reason: Description of the failure.
    """

    exit_code: int = 4

    def __init__(self, scanner: str, reason: str) -> None:
        self.scanner = scanner
        self.reason = reason
        super().__init__(f"{scanner}: {reason}")


class ScannerUnavailableError(ScannerError):
    """Raised on transient scanner infrastructure errors (retried with backoff)."""


class ScannerInvocationError(ScannerError):
    """Raised when a scanner ran and failed, or is not installed."""


class SignatureError(KeelError):
    """Raised when signing or signature verification fails.

    A verification failure is a hard stop for deployment and is never
    retried: re-checking a signature does not change its outcome.

    Attributes:
        image_ref: The image reference or digest involved.
        reason: Description of why the operation failed.
    """

    exit_code: int = 6

    def __init__(self, image_ref: str, reason: str) -> None:
        self.image_ref = image_ref
        self.reason = reason

        msg = f"Signature check failed for {image_ref}: {reason}"
        msg += "\n\nRemediation:\n"
        lowered = reason.lower()
        if "not pushed" in lowered or "no digest" in lowered:
            msg += "  - Push the image before signing it\n"
        elif "no signature" in lowered:
            msg += "  - Re-run the pipeline so the image is signed after push\n"
        else:
            msg += "  - Confirm the public key matches the signing key\n"
            msg += "  - Rebuild and re-sign the image from a fresh pipeline run\n"
        super().__init__(msg)


class KeyLoadError(SignatureError):
    """Raised when signing or verification key material cannot be loaded."""

    def __init__(self, reason: str, key_ref: str | None = None) -> None:
        self.key_ref = key_ref
        super().__init__(key_ref or "<key>", f"key load failed: {reason}")


class ConcurrentLockError(KeelError):
    """Raised when a namespace or signing lock cannot be acquired in time.

    Attributes:
        resource: The locked resource (e.g. ``namespace:prod``).
        timeout_seconds: How long we waited before giving up.
    """

    exit_code: int = 7

    def __init__(self, resource: str, timeout_seconds: float) -> None:
        self.resource = resource
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Could not acquire lock for {resource} (timeout: {timeout_seconds}s). "
            "Another run may be using it. Retry later or increase KEEL_LOCK_TIMEOUT."
        )


class RegistryError(KeelError):
    """Raised when a registry operation fails. Treated as transient.

    Attributes:
        registry: The repository or registry host.
        reason: Description of the failure.
    """

    exit_code: int = 8

    def __init__(self, registry: str, reason: str) -> None:
        self.registry = registry
        self.reason = reason
        super().__init__(f"Registry operation failed for {registry}: {reason}")


class ImageNotFoundError(KeelError):
    """Raised when a tag cannot be resolved in the registry. Not transient."""

    exit_code: int = 8

    def __init__(self, repository: str, tag: str) -> None:
        self.repository = repository
        self.tag = tag
        super().__init__(f"Image not found: {repository}:{tag}")


class ImmutabilityViolationError(KeelError):
    """Raised when a tag is already bound to a different digest.

    Attributes:
        reference: ``repository:tag`` that already exists.
        existing_digest: Digest currently bound to the tag.
    """

    exit_code: int = 9

    def __init__(self, reference: str, existing_digest: str) -> None:
        self.reference = reference
        self.existing_digest = existing_digest
        super().__init__(
            f"Cannot rebind immutable tag {reference} "
            f"(existing digest: {existing_digest[:19]}...). Use a new build id."
        )


class DeployError(KeelError):
    """Raised when applying a release to the cluster fails.

    Not retried automatically: a fresh pipeline trigger is the recovery path.

    Attributes:
        namespace: Target namespace.
        release_name: Target release.
        reason: Description of the failure.
    """

    exit_code: int = 10

    def __init__(self, namespace: str, release_name: str, reason: str) -> None:
        self.namespace = namespace
        self.release_name = release_name
        self.reason = reason
        super().__init__(f"Deploy of {release_name} to namespace {namespace} failed: {reason}")


class ApprovalTimeoutError(KeelError):
    """Raised when no approval was recorded within the wait window.

    The pipeline does not fail on this error: the run stays pending at the
    approval gate until it is approved or cancelled.
    """

    exit_code: int = 11

    def __init__(self, stage: str, run_id: str, waited_seconds: float) -> None:
        self.stage = stage
        self.run_id = run_id
        self.waited_seconds = waited_seconds
        super().__init__(
            f"No approval recorded for stage {stage} of run {run_id} "
            f"after {waited_seconds:.0f}s. Record one with: keel approve {stage} {run_id}"
        )


class StageTimeoutError(KeelError):
    """Raised when a pipeline step exceeds its bounded timeout."""

    exit_code: int = 12

    def __init__(self, step: str, timeout_seconds: float) -> None:
        self.step = step
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Step '{step}' exceeded its timeout of {timeout_seconds}s")


class PromotionGateError(KeelError):
    """Raised when a deploy stage's upstream gate does not hold."""

    exit_code: int = 13

    def __init__(self, stage: str, reason: str) -> None:
        self.stage = stage
        self.reason = reason
        super().__init__(f"Promotion gate for stage {stage} failed: {reason}")


class InvalidRunStateError(KeelError):
    """Raised when an operation is not valid for a run's current state."""

    exit_code: int = 14

    def __init__(self, run_id: str, state: str, operation: str) -> None:
        self.run_id = run_id
        self.state = state
        self.operation = operation
        super().__init__(f"Cannot {operation} run {run_id} in state '{state}'")


__all__ = [
    "KeelError",
    "ConfigurationError",
    "UnwatchedBranchError",
    "SecretNotFoundError",
    "BuildError",
    "ScanFailure",
    "ScannerError",
    "ScannerUnavailableError",
    "ScannerInvocationError",
    "SignatureError",
    "KeyLoadError",
    "ConcurrentLockError",
    "RegistryError",
    "ImageNotFoundError",
    "ImmutabilityViolationError",
    "DeployError",
    "ApprovalTimeoutError",
    "StageTimeoutError",
    "PromotionGateError",
    "InvalidRunStateError",
]
