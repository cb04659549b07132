"""Error taxonomy for the mix pipeline.

Config and spawn errors reach the caller. Acquisition and cleanup errors are
logged by the component that hits them and never cross its boundary. Runtime
errors are reported through status and the event channel.
"""


class LiveMixError(Exception):
    status_code = 500

    def __init__(self, detail: str = "Pipeline error"):
        self.detail = detail
        super().__init__(detail)


class ConfigError(LiveMixError):
    """A value is out of range or the source mode is unknown."""

    status_code = 422

    def __init__(self, detail: str = "Invalid mix configuration"):
        super().__init__(detail)


class SourceAcquisitionError(LiveMixError):
    def __init__(self, detail: str = "Secondary audio source unavailable"):
        super().__init__(detail)


class ProcessSpawnError(LiveMixError):
    """The transcoding engine could not be launched or never became ready."""

    status_code = 502

    def __init__(self, detail: str = "Transcoding engine failed to start"):
        super().__init__(detail)


class ProcessRuntimeError(LiveMixError):
    def __init__(self, detail: str = "Transcoding engine exited unexpectedly"):
        super().__init__(detail)


class CleanupError(LiveMixError):
    def __init__(self, detail: str = "Resource cleanup failed"):
        super().__init__(detail)
