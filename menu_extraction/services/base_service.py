from abc import ABC, abstractmethod
from typing import Any

from menu_extraction.core.exceptions import AppError
from menu_extraction.utils.logging import get_logger

LOGGER = get_logger(__name__)


class BaseService(ABC):
    """Base class for pipeline services.

    Runs input validation before the core logic and normalizes failures
    into AppError.
    """

    def __init__(self):
        self.logger = LOGGER

    async def execute(self, *args, **kwargs) -> Any:
        """Validate the input, then run the service.

        Raises:
            AppError: If validation or execution fails. Errors that are
                already AppError propagate unchanged.
        """
        try:
            self.validate(*args, **kwargs)
            return await self.run(*args, **kwargs)

        except AppError:
            raise

        except Exception as e:
            self.logger.error(
                f"{self.__class__.__name__} failed: {str(e)}",
                exc_info=True,
                extra={"service": self.__class__.__name__},
            )
            raise AppError(f"Service execution failed: {str(e)}", original_error=e)

    def validate(self, *args, **kwargs):
        """Override to reject bad input with a ValidationError."""

    @abstractmethod
    async def run(self, *args, **kwargs) -> Any:
        """Core service logic, implemented by subclasses."""
