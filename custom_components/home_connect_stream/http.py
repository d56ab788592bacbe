"""OAuth callback endpoint for Home Connect Stream."""

import html
import logging
from dataclasses import dataclass

from aiohttp import web
from homeassistant.components.http import HomeAssistantView
from homeassistant.core import HomeAssistant

from .auth import AuthorizationFlowHandler
from .const import DOMAIN, OAUTH_CALLBACK_NAME, OAUTH_CALLBACK_PATH

_LOGGER: logging.Logger = logging.getLogger(__package__)

DATA_PENDING_AUTHORIZATION = f"{DOMAIN}_pending_authorization"
DATA_VIEW_REGISTERED = f"{DOMAIN}_callback_view"

SUCCESS_PAGE = """<html>
<head><title>Success</title></head>
<body style="font-family: sans-serif; padding: 20px;">
    <h2>&#10003; Connected!</h2>
    <p>Your Home Connect account is now linked to Home Assistant.</p>
    <p>You can close this window and continue setup.</p>
</body>
</html>"""

FAILURE_PAGE = """<html>
<head><title>Error</title></head>
<body style="font-family: sans-serif; padding: 20px;">
    <h2>&#10007; Connection Failed</h2>
    <p>Unable to connect to Home Connect.</p>
    {error}
    <p>Please check the following:</p>
    <ul>
        <li>Client ID and Client Secret are correct (no extra spaces)</li>
        <li>The Redirect URI in the Home Connect Developer Portal matches exactly</li>
        <li>You waited 30+ minutes after creating the application</li>
    </ul>
    <p>Check the Home Assistant logs for more details.</p>
</body>
</html>"""


@dataclass
class PendingAuthorization:
    """An authorization waiting for the provider redirect."""

    flow_id: str
    handler: AuthorizationFlowHandler


def render_success() -> str:
    """Return the page shown after a successful authorization."""
    return SUCCESS_PAGE


def render_failure(error: str | None) -> str:
    """Return the page shown after a failed authorization."""
    error_html = f"<p><b>Error:</b> {html.escape(error)}</p>" if error else ""
    return FAILURE_PAGE.format(error=error_html)


def async_set_pending_authorization(
    hass: HomeAssistant, flow_id: str, handler: AuthorizationFlowHandler
) -> None:
    """Remember the flow the next callback belongs to."""
    hass.data[DATA_PENDING_AUTHORIZATION] = PendingAuthorization(flow_id, handler)
    if not hass.data.get(DATA_VIEW_REGISTERED):
        hass.http.register_view(HomeConnectOAuthCallbackView(hass))
        hass.data[DATA_VIEW_REGISTERED] = True


def async_pop_pending_authorization(
    hass: HomeAssistant, flow_id: str
) -> PendingAuthorization | None:
    """Forget the pending authorization of a flow."""
    pending = hass.data.get(DATA_PENDING_AUTHORIZATION)
    if pending is None or pending.flow_id != flow_id:
        return None
    return hass.data.pop(DATA_PENDING_AUTHORIZATION)


class HomeConnectOAuthCallbackView(HomeAssistantView):
    """Receives the Home Connect authorization redirect."""

    url = OAUTH_CALLBACK_PATH
    name = OAUTH_CALLBACK_NAME
    requires_auth = False

    def __init__(self, hass: HomeAssistant) -> None:
        self.hass = hass

    async def get(self, request: web.Request) -> web.Response:
        """Validate the callback, exchange the code and resume the flow."""
        pending: PendingAuthorization | None = self.hass.data.get(
            DATA_PENDING_AUTHORIZATION
        )
        if pending is None:
            _LOGGER.error("OAuth callback received with no authorization in progress")
            return self._page(
                render_failure("No authorization in progress"), status=400
            )

        result = await pending.handler.handle_callback(request.query)
        # The flow reads the outcome from the handler
        await self.hass.config_entries.flow.async_configure(
            flow_id=pending.flow_id, user_input={}
        )
        if not result.success:
            return self._page(render_failure(result.error), status=400)
        return self._page(render_success())

    @staticmethod
    def _page(body: str, status: int = 200) -> web.Response:
        return web.Response(text=body, status=status, content_type="text/html")
