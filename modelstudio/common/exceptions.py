"""
Error kinds raised by the training, registry and prediction layers.

Every error carries a ``kind`` tag so HTTP callers can tell a bad request
from a missing model from a backend failure without parsing messages.
"""

from typing import Optional


class ModelStudioError(Exception):
    kind = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ModelStudioError):
    kind = "validation"


class UnsupportedFormatError(ValidationError):
    def __init__(self, fmt: str, supported):
        super().__init__(
            f"Unsupported export format '{fmt}'. Supported: {', '.join(supported)}"
        )
        self.format = fmt


class ModelExistsError(ValidationError):
    def __init__(self, model_id: str):
        super().__init__(f"Model {model_id} already exists")
        self.model_id = model_id


class NotFoundError(ModelStudioError):
    kind = "not_found"


class ModelNotFoundError(NotFoundError):
    def __init__(self, model_id: str):
        super().__init__(f"Model {model_id} not found")
        self.model_id = model_id


class NotTrainedError(ModelStudioError):
    kind = "not_trained"

    def __init__(self, model_id: str):
        super().__init__(f"Model {model_id} has not been trained")
        self.model_id = model_id


class BackendError(ModelStudioError):
    kind = "backend"

    def __init__(self, message: str, stderr: Optional[str] = None):
        super().__init__(message)
        self.stderr = stderr


class ParseError(ModelStudioError):
    kind = "parse"

    def __init__(self, message: str, raw_output: str = ""):
        super().__init__(message)
        self.raw_output = raw_output
