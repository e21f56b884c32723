class KeelScanError(Exception):
    pass

class ConfigError(KeelScanError):
    pass

class ValidationError(KeelScanError):
    """Scan request rejected at admission."""
    pass

class InvalidTransitionError(KeelScanError):
    """Illegal scan job status change."""
    pass

# Scanner errors
class ScannerError(KeelScanError):
    pass

class AdapterFailure(ScannerError):
    """One scanner tool failed. Recorded, never fails the job on its own."""
    pass

class AdapterNotFoundError(AdapterFailure):
    pass

class AdapterTimeoutError(AdapterFailure):
    pass

class AdapterExecutionError(AdapterFailure):
    pass

class CancellationRequested(KeelScanError):
    """Adapter process was aborted because its job was cancelled."""
    pass

# Orchestrator errors
class OrchestratorError(KeelScanError):
    pass

class AllAdaptersFailedError(OrchestratorError):
    pass

class QueueOverflowError(OrchestratorError):
    pass

class OrphanRecoveryError(OrchestratorError):
    pass

class WorkspaceError(OrchestratorError):
    """Image could not be prepared for scanning."""
    pass

class SubscriberDisconnected(KeelScanError):
    """Raised by a progress handler when its transport went away."""
    pass

class StorageError(KeelScanError):
    pass

class AuditLogError(KeelScanError):
    """Failed to write to audit log."""
    pass
