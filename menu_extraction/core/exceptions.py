from typing import List, Optional


class AppError(Exception):
    """Base exception for application errors."""
    def __init__(self, message: str, original_error: Exception = None):
        super().__init__(message)
        self.original_error = original_error

class APIClientError(AppError):
    """Raised when a Gemini API call fails."""
    pass

class APITimeoutError(APIClientError):
    """Raised when a Gemini API call times out."""
    pass

class UploadError(APIClientError):
    """Raised when a document cannot be uploaded to the Files API."""
    pass

class ValidationError(AppError):
    """Raised when input validation fails."""
    pass

class InputValidationError(ValidationError):
    """Raised when one or more input documents are malformed.

    Carries every problem found, not only the first one.
    """
    def __init__(self, errors: List[str], original_error: Optional[Exception] = None):
        message = "Invalid input documents: " + "; ".join(errors)
        super().__init__(message, original_error=original_error)
        self.errors = errors

class ConfigurationError(AppError):
    """Raised when configuration is invalid or missing."""
    pass

class DocumentPreparationError(AppError):
    """Raised when a document cannot be fetched or decoded."""
    pass

class UnsupportedDocumentError(DocumentPreparationError):
    """Raised when a document type is not supported."""
    pass

class StructureAnalysisError(AppError):
    """Raised when menu structure analysis fails. Fatal for the run."""
    pass
