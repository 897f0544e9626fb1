"""
Layer 4 — Auto-Capture
Per-frame scan loop: detection at work resolution, stability debounce,
one-shot rectification at capture resolution, manual shutter override.
"""
from .auto_capture import (
    CancellationToken,
    CaptureConfig,
    CaptureOrchestrator,
    CaptureResult,
    ScanListener,
)

__all__ = [
    'CancellationToken',
    'CaptureConfig',
    'CaptureOrchestrator',
    'CaptureResult',
    'ScanListener',
]
