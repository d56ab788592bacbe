"""The Home Connect Stream constants."""

from homeassistant.const import Platform

# Base component constants
NAME = "Home Connect Stream"
DOMAIN = "home_connect_stream"

# Platforms
BINARY_SENSOR = Platform.BINARY_SENSOR
SENSOR = Platform.SENSOR
SWITCH = Platform.SWITCH
PLATFORMS = [BINARY_SENSOR, SENSOR, SWITCH]

# Configuration and options
CONF_CLIENT_ID = "client_id"
CONF_CLIENT_SECRET = "client_secret"
CONF_REDIRECT_URI = "redirect_uri"
CONF_ACCESS_TOKEN = "access_token"
CONF_REFRESH_TOKEN = "refresh_token"
CONF_TOKEN_EXPIRES_AT = "token_expires_at"
CONF_APPLIANCES = "appliances"
CONF_LANGUAGE = "language"

DEFAULT_LANGUAGE = "en-US"

# Home Connect endpoints
OAUTH_AUTHORIZATION_URL = "https://api.home-connect.com/security/oauth/authorize"
OAUTH_TOKEN_URL = "https://api.home-connect.com/security/oauth/token"
API_BASE_URL = "https://api.home-connect.com"
ENDPOINT_APPLIANCES = "/api/homeappliances"
ENDPOINT_EVENTS = f"{ENDPOINT_APPLIANCES}/events"
OAUTH_SCOPE = "IdentifyAppliance Monitor Settings Control"
API_CONTENT_TYPE = "application/vnd.bsh.sdk.v1+json"

# Local callback route
OAUTH_CALLBACK_PATH = f"/api/{DOMAIN}/oauth/callback"
OAUTH_CALLBACK_NAME = f"api:{DOMAIN}:oauth_callback"

# Device identifiers
DEVICE_ID_PREFIX = "HC3-"
STREAM_DEVICE_ID = "HC3-StreamDriver"

# Token validity
STATE_MAX_AGE = 600  # seconds
TOKEN_REFRESH_MARGIN = 60  # seconds
TOKEN_REQUEST_TIMEOUT = 30  # seconds

# Event stream timing
IDLE_TIMEOUT = 300  # seconds without data before reconnecting
BACKOFF_BASE = 60  # seconds
BACKOFF_MAX = 300  # seconds
BACKOFF_RESET_AFTER = 600  # seconds connected before the attempt counter resets
MAX_RECONNECT_ATTEMPTS = 10
IDLE_RECONNECT_DELAY = 5  # seconds after an idle timeout
RATE_LIMIT_BUFFER = 300  # seconds added to the provider reset hint
REST_RATE_LIMIT_BACKOFF = 60  # seconds PUT/DELETE stay blocked after a REST 429
RATE_LIMIT_WARNING_THRESHOLD = 100
API_REQUEST_TIMEOUT = 30  # seconds

# Reconciliation
INITIALIZE_DELAY = 5  # seconds, lets the stream attach before the first fetch
PROGRAMS_FETCH_DELAY = 5  # seconds after initialization

# Stream event types
EVENT_KEEP_ALIVE = "KEEP-ALIVE"
EVENT_CONNECTED = "CONNECTED"
EVENT_DISCONNECTED = "DISCONNECTED"

# Common appliance keys
KEY_OPERATION_STATE = "BSH.Common.Status.OperationState"
KEY_DOOR_STATE = "BSH.Common.Status.DoorState"
KEY_REMOTE_START_ALLOWED = "BSH.Common.Status.RemoteControlStartAllowed"
KEY_REMOTE_CONTROL_ACTIVE = "BSH.Common.Status.RemoteControlActive"
KEY_LOCAL_CONTROL_ACTIVE = "BSH.Common.Status.LocalControlActive"
KEY_POWER_STATE = "BSH.Common.Setting.PowerState"
KEY_REMAINING_PROGRAM_TIME = "BSH.Common.Option.RemainingProgramTime"
KEY_ELAPSED_PROGRAM_TIME = "BSH.Common.Option.ElapsedProgramTime"
KEY_PROGRAM_PROGRESS = "BSH.Common.Option.ProgramProgress"
KEY_START_IN_RELATIVE = "BSH.Common.Option.StartInRelative"
KEY_ACTIVE_PROGRAM = "BSH.Common.Root.ActiveProgram"
KEY_SELECTED_PROGRAM = "BSH.Common.Root.SelectedProgram"

POWER_STATE_ON = "BSH.Common.EnumType.PowerState.On"
POWER_STATE_OFF = "BSH.Common.EnumType.PowerState.Off"

# Dispatcher signals
SIGNAL_APPLIANCE_ADDED = f"{DOMAIN}_appliance_added"
SIGNAL_STREAM_STATUS = f"{DOMAIN}_stream_status"

# Services
SERVICE_CLEAR_RATE_LIMIT = "clear_rate_limit"
SERVICE_RECONNECT = "reconnect"

# Repair issues
ISSUE_INVALID_REFRESH_TOKEN = "invalid_refresh_token"

# Icon constants
ICON_STREAM = "mdi:lan-connect"
ICON_STATE_MACHINE = "mdi:state-machine"
ICON_TIMELAPSE = "mdi:timelapse"
ICON_PROGRESS = "mdi:progress-clock"
ICON_INFORMATION = "mdi:information-outline"
ICON_REMOTE = "mdi:remote"
ICON_POWER = "mdi:power"

SUPPORTED_LANGUAGES: dict[str, dict[str, str]] = {
    "Bulgarian": {"Bulgaria": "bg-BG"},
    "Chinese (Simplified)": {
        "China": "zh-CN",
        "Hong Kong": "zh-HK",
        "Taiwan": "zh-TW",
    },
    "Czech": {"Czech Republic": "cs-CZ"},
    "Danish": {"Denmark": "da-DK"},
    "Dutch": {"Belgium": "nl-BE", "Netherlands": "nl-NL"},
    "English": {
        "Australia": "en-AU",
        "Canada": "en-CA",
        "India": "en-IN",
        "New Zealand": "en-NZ",
        "Singapore": "en-SG",
        "South Africa": "en-ZA",
        "United Kingdom": "en-GB",
        "United States": "en-US",
    },
    "Finnish": {"Finland": "fi-FI"},
    "French": {
        "Belgium": "fr-BE",
        "Canada": "fr-CA",
        "France": "fr-FR",
        "Luxembourg": "fr-LU",
        "Switzerland": "fr-CH",
    },
    "German": {
        "Austria": "de-AT",
        "Germany": "de-DE",
        "Luxembourg": "de-LU",
        "Switzerland": "de-CH",
    },
    "Greek": {"Greece": "el-GR"},
    "Hungarian": {"Hungary": "hu-HU"},
    "Italian": {"Italy": "it-IT", "Switzerland": "it-CH"},
    "Norwegian": {"Norway": "nb-NO"},
    "Polish": {"Poland": "pl-PL"},
    "Portuguese": {"Portugal": "pt-PT"},
    "Romanian": {"Romania": "ro-RO"},
    "Russian": {"Russian Federation": "ru-RU"},
    "Serbian": {"Serbia": "sr-SR"},
    "Slovak": {"Slovakia": "sk-SK"},
    "Slovenian": {"Slovenia": "sl-SI"},
    "Spanish": {"Chile": "es-CL", "Peru": "es-PE", "Spain": "es-ES"},
    "Swedish": {"Sweden": "sv-SE"},
    "Turkish": {"Turkey": "tr-TR"},
    "Ukrainian": {"Ukraine": "uk-UA"},
}
