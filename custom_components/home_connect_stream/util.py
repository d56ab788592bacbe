"""Utilities for the Home Connect Stream platform."""

import logging
from typing import Any

from homeassistant.exceptions import HomeAssistantError

_LOGGER: logging.Logger = logging.getLogger(__package__)

# Common error pattern lists for reuse across functions
REMOTE_CONTROL_ERROR_PHRASES = [
    "remote control",
    "remotecontrol",
    "remote start",
    "remotestart",
]


class CommandError(Exception):
    """Base exception for Home Connect API errors."""

    def __init__(
        self,
        message: str,
        status: int | None = None,
        error_key: str | None = None,
        description: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.error_key = error_key
        self.description = description


class RemoteControlDisabledError(CommandError):
    """Remote control or remote start is not enabled on the appliance."""

    pass


class ApplianceOfflineError(CommandError):
    """Appliance is disconnected."""

    pass


class CommandValidationError(CommandError):
    """Command cannot be executed in the current appliance state."""

    pass


class NoActiveProgramError(CommandError):
    """No program is running on the appliance."""

    pass


class RateLimitError(CommandError):
    """Rate limit exceeded."""

    pass


class AuthenticationError(CommandError):
    """Authentication failed - tokens expired or invalid."""

    pass


class NetworkError(CommandError):
    """Network connectivity error."""

    pass


def mask_token(token: str | None) -> str:
    """Mask sensitive token for logging purposes."""
    if not token or len(token) < 8:
        return "***"
    return f"{token[:4]}***{token[-4:]}"


def extract_enum_value(full: str | None) -> str | None:
    """Return the last dotted segment of an enum value.

    "BSH.Common.EnumType.PowerState.On" becomes "On".
    """
    if full is None:
        return None
    text = str(full)
    if not text:
        return None
    return text[text.rfind(".") + 1 :]


def seconds_to_time(seconds: int | float | None) -> str:
    """Format a duration in seconds as HH:MM."""
    if not seconds or seconds <= 0:
        return "00:00"
    total = int(seconds)
    hours, remainder = divmod(total, 3600)
    return f"{hours:02d}:{remainder // 60:02d}"


def flatten_language_map(languages: dict[str, Any]) -> dict[str, str]:
    """Flatten the nested language map into code -> label pairs."""
    flattened: dict[str, str] = {}
    for language, value in languages.items():
        if isinstance(value, dict):
            for region, code in value.items():
                flattened[code] = f"{language} - {region} ({code})"
        else:
            flattened[str(language)] = str(value)
    return flattened


def parse_error_body(body: Any) -> tuple[str | None, str | None]:
    """Extract the error key and description from a Home Connect error body."""
    if not isinstance(body, dict):
        return None, None
    error = body.get("error")
    if isinstance(error, dict):
        return error.get("key"), error.get("description") or error.get("value")
    if isinstance(error, str):
        return error, body.get("error_description")
    return None, None


def is_remote_control_error(error_key: str | None, description: str | None) -> bool:
    """Return True when the error refers to disabled remote control."""
    text = f"{error_key or ''} {description or ''}".lower()
    return any(phrase in text for phrase in REMOTE_CONTROL_ERROR_PHRASES)


def map_command_error_to_home_assistant_error(
    ex: Exception,
    action: str,
    logger: logging.Logger | None = None,
) -> HomeAssistantError:
    """Map command exceptions to user-friendly Home Assistant errors.

    Args:
        ex: The original exception
        action: Human readable action name (for logging and the message)
        logger: Logger instance

    Returns:
        HomeAssistantError with user-friendly message
    """
    if logger is None:
        logger = _LOGGER

    if isinstance(ex, RemoteControlDisabledError):
        message = (
            "Remote control is disabled for this appliance. "
            "Please enable it on the appliance's control panel."
        )
    elif isinstance(ex, ApplianceOfflineError):
        message = (
            "Appliance is disconnected or not available. "
            "Check the appliance's network connection."
        )
    elif isinstance(ex, RateLimitError):
        message = "Too many requests sent. Please wait a moment and try again."
    elif isinstance(ex, CommandValidationError):
        message = (
            "Command not accepted by appliance in its current state."
            if not ex.description
            else f"Command not accepted by appliance: {ex.description}"
        )
    elif isinstance(ex, AuthenticationError):
        message = "Authentication failed - please reauthenticate."
    elif isinstance(ex, NetworkError):
        message = (
            f"Network connection failed during {action}. "
            "Please check your internet connection."
        )
    else:
        message = f"Operation failed: {action}. Check logs for details."

    logger.warning("Command failed for %s: %s", action, ex)
    return HomeAssistantError(message)
