"""
Optimizer error types.

An OptimizerError affects ONE file: the orchestrator keeps the original
content, logs a warning and continues with the stage.
"""


class OptimizerError(Exception):
    """Base exception for per-file optimizer failures."""

    def __init__(self, optimizer: str, target: str, reason: str):
        self.optimizer = optimizer
        self.target = target
        self.reason = reason
        super().__init__(f"{optimizer} optimizer failed for {target}: {reason}")


class UnsupportedFormatError(OptimizerError):
    """Raised when an image payload cannot be decoded."""

    def __init__(self, target: str, detail: str):
        super().__init__("image", target, f"unsupported format ({detail})")
