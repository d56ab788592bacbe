"""Adds config flow for Home Connect Stream."""

import logging
from typing import Any, Mapping

import voluptuous as vol
from homeassistant.config_entries import (
    ConfigEntry,
    ConfigFlow,
    ConfigFlowResult,
    OptionsFlow,
)
from homeassistant.core import callback
from homeassistant.helpers import issue_registry as ir
from homeassistant.helpers.aiohttp_client import async_get_clientsession
from homeassistant.helpers.network import NoURLAvailableError, get_url
from homeassistant.helpers.selector import (
    SelectOptionDict,
    SelectSelector,
    SelectSelectorConfig,
    SelectSelectorMode,
    TextSelector,
    TextSelectorConfig,
    TextSelectorType,
)

from .api import ApplianceDescriptor
from .auth import AuthorizationFlowHandler, TokenStore
from .const import (
    CONF_ACCESS_TOKEN,
    CONF_APPLIANCES,
    CONF_CLIENT_ID,
    CONF_CLIENT_SECRET,
    CONF_LANGUAGE,
    CONF_REDIRECT_URI,
    CONF_REFRESH_TOKEN,
    CONF_TOKEN_EXPIRES_AT,
    DEFAULT_LANGUAGE,
    DOMAIN,
    ISSUE_INVALID_REFRESH_TOKEN,
    NAME,
    OAUTH_CALLBACK_PATH,
    SUPPORTED_LANGUAGES,
)
from .http import async_pop_pending_authorization, async_set_pending_authorization
from .util import CommandError, flatten_language_map, mask_token

_LOGGER = logging.getLogger(__name__)

DEVELOPER_PORTAL_URL = "https://developer.home-connect.com/applications"


def _validate_credentials(client_id: str | None, client_secret: str | None) -> list[str]:
    """Validate the application credentials entered by the user."""
    errors = []
    if not client_id or not client_id.strip():
        errors.append("Client ID is required")
    if not client_secret or not client_secret.strip():
        errors.append("Client secret is required")

    for name, value in (("Client ID", client_id), ("Client secret", client_secret)):
        if value and any(char.isspace() for char in value.strip()):
            errors.append(f"{name} contains whitespace")
    return errors


class HomeConnectStreamFlowHandler(ConfigFlow, domain=DOMAIN):  # type: ignore[call-arg]  # HA metaclass requires domain kwarg
    """Config flow for Home Connect Stream."""

    VERSION = 1

    def __init__(self) -> None:
        """Initialize."""
        self._errors: dict[str, str] = {}
        self._auth_handler: AuthorizationFlowHandler | None = None
        self._reauth_entry: ConfigEntry | None = None

    def _default_redirect_uri(self) -> str:
        return f"{get_url(self.hass, prefer_external=True)}{OAUTH_CALLBACK_PATH}"

    def _create_auth_handler(
        self, client_id: str, client_secret: str, redirect_uri: str | None = None
    ) -> AuthorizationFlowHandler:
        token_store = TokenStore(
            async_get_clientsession(self.hass), client_id, client_secret
        )
        return AuthorizationFlowHandler(
            token_store, self._default_redirect_uri, redirect_uri
        )

    async def async_step_user(
        self, user_input: dict[str, Any] | None = None
    ) -> ConfigFlowResult:
        """Handle a flow initialized by the user."""
        self._errors = {}

        if user_input is not None:
            client_id = (user_input.get(CONF_CLIENT_ID) or "").strip()
            client_secret = (user_input.get(CONF_CLIENT_SECRET) or "").strip()

            validation_errors = _validate_credentials(client_id, client_secret)
            if validation_errors:
                self._errors["base"] = "invalid_format"
                _LOGGER.warning(
                    "Credential validation failed: %s", "; ".join(validation_errors)
                )
                return self._show_config_form(user_input)

            # check if the application is configured already
            if any(
                client_id == entry.data.get(CONF_CLIENT_ID)
                for entry in self._async_current_entries()
            ):
                return self.async_abort(reason="already_configured_account")

            _LOGGER.debug("Starting authorization for client %s", mask_token(client_id))
            self._auth_handler = self._create_auth_handler(client_id, client_secret)
            return await self.async_step_auth()

        return self._show_config_form(user_input)

    async def async_step_auth(
        self, user_input: dict[str, Any] | None = None
    ) -> ConfigFlowResult:
        """Send the user to Home Connect and wait for the callback."""
        if self._auth_handler is None:
            return self.async_abort(reason="auth_failed")

        if user_input is None:
            try:
                url = self._auth_handler.build_authorization_url()
            except NoURLAvailableError:
                _LOGGER.error("No Home Assistant URL available for the OAuth callback")
                return self.async_abort(reason="no_url_available")
            async_set_pending_authorization(self.hass, self.flow_id, self._auth_handler)
            return self.async_external_step(
                step_id="auth",
                url=url,
                description_placeholders={
                    "redirect_uri": self._auth_handler.redirect_uri
                },
            )

        async_pop_pending_authorization(self.hass, self.flow_id)
        return self.async_external_step_done(next_step_id="auth_done")

    async def async_step_auth_done(
        self, user_input: dict[str, Any] | None = None
    ) -> ConfigFlowResult:
        """Check the outcome of the authorization."""
        if self._auth_handler is None:
            return self.async_abort(reason="auth_failed")

        credentials = self._auth_handler.token_store.credentials
        if not credentials.access_token:
            _LOGGER.error("Authorization failed: %s", credentials.last_error)
            self._errors = {"base": "auth_failed"}
            placeholders = {
                "url": DEVELOPER_PORTAL_URL,
                "error": credentials.last_error or "unknown error",
            }
            if self._reauth_entry is not None:
                return self.async_show_form(
                    step_id="reauth_confirm",
                    errors=self._errors,
                    description_placeholders={
                        **placeholders,
                        "title": self._reauth_entry.title,
                    },
                )
            return self._show_config_form(
                {
                    CONF_CLIENT_ID: self._auth_handler.token_store.client_id,
                    CONF_CLIENT_SECRET: "",
                },
                placeholders=placeholders,
            )

        return await self.async_step_creation()

    async def async_step_creation(
        self, user_input: dict[str, Any] | None = None
    ) -> ConfigFlowResult:
        """Create or update the config entry with the issued tokens."""
        if self._auth_handler is None:
            return self.async_abort(reason="auth_failed")

        token_store = self._auth_handler.token_store
        credentials = token_store.credentials
        data = {
            CONF_CLIENT_ID: token_store.client_id,
            CONF_CLIENT_SECRET: token_store.client_secret,
            CONF_REDIRECT_URI: self._auth_handler.redirect_uri,
            CONF_ACCESS_TOKEN: credentials.access_token,
            CONF_REFRESH_TOKEN: credentials.refresh_token,
            CONF_TOKEN_EXPIRES_AT: credentials.expires_at,
        }

        if self._reauth_entry is not None:
            entry = self._reauth_entry
            issue_id = f"{ISSUE_INVALID_REFRESH_TOKEN}_{entry.entry_id}"
            _LOGGER.info("Reauthorization succeeded, dismissing issue %s", issue_id)
            ir.async_delete_issue(self.hass, DOMAIN, issue_id)
            return self.async_update_reload_and_abort(
                entry, data={**entry.data, **data}, reason="reauth_successful"
            )

        _LOGGER.info(
            "Creating entry for client %s (access token %s)",
            mask_token(token_store.client_id),
            mask_token(credentials.access_token),
        )
        return self.async_create_entry(
            title=NAME,
            data=data,
            options={CONF_APPLIANCES: [], CONF_LANGUAGE: DEFAULT_LANGUAGE},
        )

    async def async_step_reauth(
        self, entry_data: Mapping[str, Any]
    ) -> ConfigFlowResult:
        """Handle configuration by re-auth."""
        self._reauth_entry = self.hass.config_entries.async_get_entry(
            self.context["entry_id"]
        )
        _LOGGER.warning(
            "Reauthorization requested for client %s",
            mask_token(entry_data.get(CONF_CLIENT_ID)),
        )
        return await self.async_step_reauth_confirm()

    def _get_reauth_entry(self) -> ConfigEntry:
        """Get the reauth entry."""
        entry = self._reauth_entry
        if entry is None:
            raise RuntimeError("No reauth entry available")
        return entry

    async def async_step_reauth_confirm(
        self, user_input: dict[str, Any] | None = None
    ) -> ConfigFlowResult:
        """Confirm reauthorization and restart the authorization flow."""
        entry = self._get_reauth_entry()
        if user_input is None:
            return self.async_show_form(
                step_id="reauth_confirm",
                errors=self._errors,
                description_placeholders={"title": entry.title},
            )

        self._errors = {}
        self._auth_handler = self._create_auth_handler(
            entry.data[CONF_CLIENT_ID],
            entry.data[CONF_CLIENT_SECRET],
            entry.data.get(CONF_REDIRECT_URI),
        )
        return await self.async_step_auth()

    @staticmethod
    @callback
    def async_get_options_flow(config_entry: ConfigEntry) -> OptionsFlow:
        """Present the configuration options dialog."""
        return HomeConnectStreamOptionsFlowHandler(config_entry)

    def _get_config_schema(self, defaults: dict[str, Any]) -> vol.Schema:
        """Get the config schema with defaults."""
        return vol.Schema(
            {
                vol.Required(
                    CONF_CLIENT_ID, default=defaults.get(CONF_CLIENT_ID, "")
                ): TextSelector(TextSelectorConfig(type=TextSelectorType.TEXT)),
                vol.Required(
                    CONF_CLIENT_SECRET, default=defaults.get(CONF_CLIENT_SECRET, "")
                ): TextSelector(TextSelectorConfig(type=TextSelectorType.PASSWORD)),
            }
        )

    def _show_config_form(
        self,
        user_input: dict[str, Any] | None,
        placeholders: dict[str, str] | None = None,
    ) -> ConfigFlowResult:
        """Show the credentials form."""
        defaults = user_input or {}
        return self.async_show_form(
            step_id="user",
            data_schema=self._get_config_schema(defaults),
            errors=self._errors,
            description_placeholders=placeholders
            or {"url": DEVELOPER_PORTAL_URL, "error": ""},
        )


class HomeConnectStreamOptionsFlowHandler(OptionsFlow):
    """Appliance selection and language options."""

    def __init__(self, config_entry) -> None:
        """Initialize options flow."""
        self._config_entry = config_entry

    async def async_step_init(
        self, user_input: dict[str, Any] | None = None
    ) -> ConfigFlowResult:
        """Manage the options."""
        if user_input is not None:
            return self.async_create_entry(
                title="",
                data={
                    CONF_APPLIANCES: list(user_input.get(CONF_APPLIANCES) or []),
                    CONF_LANGUAGE: user_input.get(CONF_LANGUAGE) or DEFAULT_LANGUAGE,
                },
            )

        coordinator = self.hass.data.get(DOMAIN, {}).get(self._config_entry.entry_id)
        if coordinator is None:
            return self.async_abort(reason="not_loaded")

        try:
            descriptors = await coordinator.reconciler.async_refresh_descriptors()
        except CommandError as ex:
            _LOGGER.warning("Could not fetch appliance list: %s", ex)
            descriptors = coordinator.reconciler.descriptors
            if not descriptors:
                return self.async_abort(reason="cannot_connect")

        return self.async_show_form(
            step_id="init", data_schema=self._get_options_schema(descriptors)
        )

    def _get_options_schema(
        self, descriptors: Mapping[str, ApplianceDescriptor]
    ) -> vol.Schema:
        """Get the options schema with current values."""
        options = self._config_entry.options
        selected = [
            appliance_id
            for appliance_id in options.get(CONF_APPLIANCES) or []
            if appliance_id in descriptors
        ]
        appliance_options = [
            SelectOptionDict(
                value=descriptor.appliance_id,
                label=f"{descriptor.name} ({descriptor.appliance_type})",
            )
            for descriptor in sorted(descriptors.values(), key=lambda d: d.name)
        ]
        language_options = [
            SelectOptionDict(value=code, label=label)
            for code, label in flatten_language_map(SUPPORTED_LANGUAGES).items()
        ]

        return vol.Schema(
            {
                vol.Optional(CONF_APPLIANCES, default=selected): SelectSelector(
                    SelectSelectorConfig(
                        options=appliance_options,
                        multiple=True,
                        mode=SelectSelectorMode.LIST,
                    )
                ),
                vol.Optional(
                    CONF_LANGUAGE,
                    default=options.get(CONF_LANGUAGE) or DEFAULT_LANGUAGE,
                ): SelectSelector(
                    SelectSelectorConfig(
                        options=language_options, mode=SelectSelectorMode.DROPDOWN
                    )
                ),
            }
        )
