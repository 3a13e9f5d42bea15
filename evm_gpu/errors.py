"""
EVM GPU Error Taxonomy
~~~~~~~~~~~~~~~~~~~~~~

Typed errors raised by the device, resource, kernel and magnification layers.
Every error carries a one-line user message and a suggestion so the UI
collaborator can show something actionable without parsing exception text.
"""

from typing import Any, Dict, Optional

# ===============================
# Base Error
# ===============================


class EVMGPUError(Exception):
    """
    Base class for all evm_gpu errors

    Attributes
    ----------
    user_message : str
        Short message suitable for display
    suggestion : str
        What the user can do about it
    severity : str
        'error' or 'warning'
    retryable : bool
        Whether repeating the same call can succeed
    """

    error_type = 'gpu-error'
    user_message = 'GPU processing failed'
    suggestion = 'Try again or restart the application'
    severity = 'error'
    retryable = False

    def __init__(self, message: Optional[str] = None, **context: Any):
        self.context = context
        super().__init__(message or self.user_message)

    def to_dict(self) -> Dict[str, Any]:
        """Plain error map for the UI layer"""
        return {
            'type': self.error_type,
            'severity': self.severity,
            'message': self.user_message,
            'suggestion': self.suggestion,
            'details': str(self),
            'context': dict(self.context),
        }

# ===============================
# Device Errors
# ===============================


class GPUNotAvailableError(EVMGPUError):
    """No usable compute device"""

    error_type = 'gpu-unavailable'
    user_message = 'GPU acceleration unavailable'
    suggestion = 'Magnification will use CPU (slower) if the CPU fallback is enabled'
    severity = 'warning'


class NoAdapterError(GPUNotAvailableError):
    """No backend or adapter was found"""

    error_type = 'gpu-no-adapter'


class DeviceRequestFailedError(GPUNotAvailableError):
    """An adapter was found but refused to create a device"""

    error_type = 'gpu-device-request-failed'


class DeviceLostError(EVMGPUError):
    """The device reported an uncaptured error or was released"""

    error_type = 'gpu-device-lost'
    user_message = 'GPU device reported an error'
    suggestion = 'Restart the magnification; if it keeps failing, update the GPU driver'

# ===============================
# Construction-time Errors
# ===============================


class ShaderCompilationError(EVMGPUError):
    """Kernel source failed to compile"""

    error_type = 'gpu-shader-compilation'
    user_message = 'GPU kernel compilation failed'
    suggestion = 'Check the CUDA toolkit installation and driver version'

    def __init__(self, message: str, source: str = '', **context: Any):
        super().__init__(message, **context)
        self.message = message
        self.source = source


class AllocationError(EVMGPUError):
    """Buffer or texture allocation refused"""

    error_type = 'out-of-memory'
    user_message = 'Out of GPU memory'
    suggestion = 'Process fewer or smaller frames, or close other GPU applications'

# ===============================
# Runtime Errors
# ===============================


class ReadbackError(EVMGPUError):
    """Mapping or copying a staging buffer back to the host failed"""

    error_type = 'gpu-readback'
    user_message = 'Reading results back from the GPU failed'
    suggestion = 'Try again; if it keeps failing, restart the application'
    retryable = True


class BatchFailedError(EVMGPUError):
    """A magnification batch was aborted; no partial output is produced"""

    error_type = 'magnification-failed'
    user_message = 'Magnification failed'
    suggestion = 'Try a shorter clip or a lower gain'

    def __init__(self, message: str, stage: Optional[str] = None,
                 frame_index: Optional[int] = None, **context: Any):
        super().__init__(message, stage=stage, frame_index=frame_index, **context)
        self.stage = stage
        self.frame_index = frame_index


__all__ = [
    'EVMGPUError',
    'GPUNotAvailableError',
    'NoAdapterError',
    'DeviceRequestFailedError',
    'DeviceLostError',
    'ShaderCompilationError',
    'AllocationError',
    'ReadbackError',
    'BatchFailedError',
]
