"""Exception hierarchy for gpuwatch."""


class GpuwatchError(Exception):
    """Base class for all gpuwatch errors."""


class AcquisitionError(GpuwatchError):
    """Sampling telemetry from the device-query backend failed."""


class BackendUnavailableError(AcquisitionError):
    """nvidia-smi is missing or does not respond."""

    def __init__(self, message: str = "nvidia-smi not found or not working") -> None:
        super().__init__(message)


class StoreError(GpuwatchError):
    """Base class for snapshot store errors."""


class StoreUnavailableError(StoreError):
    """The backing database could not be opened or migrated."""


class SnapshotNotFoundError(StoreError):
    """No snapshot header exists for the requested id."""

    def __init__(self, snapshot_id: int) -> None:
        super().__init__(f"snapshot #{snapshot_id} not found")
        self.snapshot_id = snapshot_id


class NoSnapshotsError(StoreError):
    """The store holds no snapshots at all."""

    def __init__(self) -> None:
        super().__init__("no snapshots")


class TransactionError(StoreError):
    """A snapshot write failed and was rolled back."""
