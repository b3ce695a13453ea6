"""Engine defaults (bounds, lists, weights, thresholds, paths).

Centralizes static defaults so the extractor, resolver and aggregator have no
embedded magic numbers. These are baseline constants; callers can inject their
own values through ``EngineSettings`` or the dataclass fields that consume them.
"""

from __future__ import annotations

from pathlib import Path

# Paths (package-relative)
_ROOT = Path(__file__).resolve().parents[1]
DATA_DIR = _ROOT / "data"
SHORTENERS_PATH = DATA_DIR / "shorteners.json"
MALICIOUS_HOSTS_PATH = DATA_DIR / "malicious_hosts.json"

# Endpoints / headers
URLHAUS_URL_ENDPOINT = "https://urlhaus-api.abuse.ch/v1/url/"
HDR_USER_AGENT = "User-Agent"
HDR_LOCATION = "Location"
HDR_RANGE = "Range"
HDR_URLHAUS_AUTH = "Auth-Key"
DEFAULT_USER_AGENT = "qrcheck-resolver/1.0"

# Resolver bounds
MAX_HOPS = 10
PER_HOP_TIMEOUT_S = 1.0
TOTAL_DEADLINE_S = 10.0
SAFE_SCHEMES = frozenset({"http", "https"})
DANGEROUS_SCHEMES = frozenset({"data", "file", "ftp", "javascript", "vbscript"})
DEFAULT_PORTS = {"http": 80, "https": 443}
# HEAD answers that carry no redirect signal and warrant one ranged GET
HEAD_RETRY_MIN_STATUS = 400

# Cache bounds
ONE_DAY_S = 24 * 60 * 60
EXPANSION_CACHE_MAX_ENTRIES = 100
DOMAIN_AGE_CACHE_MAX_ENTRIES = 200

# Input validation
MAX_URL_LENGTH = 2048

# Rate limiting
RATE_LIMIT_REQUESTS = 10
RATE_LIMIT_WINDOW_S = 60.0

# Collaborators
LOOKUP_TIMEOUT_S = 1.5
NEW_DOMAIN_DAYS = 30
YOUNG_DOMAIN_DAYS = 90

# Lexical lists
SUSPICIOUS_TLDS = frozenset(
    {
        "zip",
        "mov",
        "xyz",
        "top",
        "click",
        "country",
        "link",
        "gq",
        "cf",
        "ga",
        "ml",
        "tk",
        "ru",
        "work",
        "support",
        "rest",
        "mom",
        "kim",
        "surf",
        "lol",
        "quest",
        "party",
        "monster",
        "icu",
        "best",
        "win",
    }
)
# TLDs that read like file names in a QR preview
EXTENSION_TLDS = frozenset({"zip", "mov"})

SUSPICIOUS_KEYWORDS = {
    "urgency": ("urgent", "act-now", "limited-time", "expires", "final-notice", "immediately"),
    "credential": ("login", "signin", "sign-in", "verify", "password", "credential", "suspended", "unlock"),
    "financial": ("bank", "payment", "invoice", "refund", "wallet", "billing", "prize", "claim"),
    "threat": ("security-alert", "locked", "unusual-activity", "warning"),
    "download": ("download", "install", "update-required"),
}

BRANDS = (
    "google",
    "paypal",
    "amazon",
    "facebook",
    "microsoft",
    "apple",
    "netflix",
    "instagram",
    "linkedin",
    "dropbox",
    "outlook",
    "icloud",
    "wellsfargo",
    "chase",
)
TYPOSQUAT_MAX_DISTANCE = 2
TYPOSQUAT_MIN_LABEL_LENGTH = 4

# Cyrillic and Greek code points that render like Latin letters
LOOKALIKE_CHARS = {
    "а": "a",
    "е": "e",
    "о": "o",
    "р": "p",
    "с": "c",
    "у": "y",
    "х": "x",
    "і": "i",
    "ј": "j",
    "ԁ": "d",
    "һ": "h",
    "ӏ": "l",
    "ο": "o",
    "ρ": "p",
    "κ": "k",
    "ɑ": "a",
    "ɡ": "g",
}

EXECUTABLE_EXTENSIONS = frozenset({".exe", ".msi", ".scr", ".bat", ".cmd", ".ps1", ".apk", ".dmg", ".pkg", ".jar", ".vbs"})
ARCHIVE_EXTENSIONS = frozenset({".zip", ".rar", ".7z", ".iso"})
ARCHIVE_PAYLOAD_HINTS = ("update", "payload", "install", "setup")

URL_LENGTH_CEILING = 2000
QUERY_PARAM_CEILING = 15

# Obfuscation thresholds
PERCENT_ENCODED_MIN_COUNT = 3
PERCENT_ENCODED_MIN_DENSITY = 0.15
BASE64_RUN_MIN_LENGTH = 40
HEX_RUN_MIN_LENGTH = 48

# Shortener heuristics / tiers
UNKNOWN_SHORTENER_MAX_HOST_LENGTH = 12
UNKNOWN_SHORTENER_MAX_PATH_LENGTH = 10
UNKNOWN_SHORTENER_MIN_PATH_LENGTH = 4
REPUTABLE_SHORTENERS = frozenset(
    {
        "bit.ly",
        "bitly.com",
        "t.co",
        "tinyurl.com",
        "goo.gl",
        "ow.ly",
        "buff.ly",
        "lnkd.in",
        "fb.me",
        "youtu.be",
        "qrco.de",
    }
)
STANDARD_SHORTENERS = frozenset({"cutt.ly", "tiny.cc", "is.gd", "v.gd", "rb.gy", "shorturl.at"})
SHORTENER_TIER_REPUTABLE = "reputable"
SHORTENER_TIER_STANDARD = "standard"
SHORTENER_TIER_UNVETTED = "unvetted"

# Query keys whose values are hidden in displayed URLs
SECRET_QUERY_KEY_PATTERN = r"token|key|pass|secret|code|credential"
DISPLAY_VALUE_MAX_CHARS = 32

# Score weights (evaluation order lives in aggregator.CHECK_ORDER)
WEIGHT_NOT_HTTPS = 15
WEIGHT_DANGEROUS_SCHEME = 50
WEIGHT_SUSPICIOUS_TLD = 25
WEIGHT_EXTENSION_TLD = 15
WEIGHT_PUNYCODE = 10
WEIGHT_HOMOGRAPH = 50
WEIGHT_TYPOSQUAT = 40
WEIGHT_IP_HOST = 35
WEIGHT_SHORTENER_TIER = {
    SHORTENER_TIER_REPUTABLE: 15,
    SHORTENER_TIER_STANDARD: 20,
    SHORTENER_TIER_UNVETTED: 30,
}
WEIGHT_UNKNOWN_SHORTENER = 45
WEIGHT_SHORTENER_OBSCURED = 25
WEIGHT_KEYWORDS = 40
WEIGHT_OBFUSCATION = 40
WEIGHT_VERY_LONG = 10
WEIGHT_EXECUTABLE = 20
WEIGHT_ARCHIVE = 10
WEIGHT_ARCHIVE_PAYLOAD = 20
WEIGHT_REDIRECT_PER_HOP = 5
WEIGHT_REDIRECT_CAP = 20
REDIRECT_MIN_HOPS = 2
WEIGHT_NEW_DOMAIN = 15
WEIGHT_MALICIOUS_FEED = 80
WEIGHT_DISPLAY_MISMATCH = 20

# Score bounds and verdict thresholds
SCORE_MIN = 0
SCORE_MAX = 100
DANGEROUS_SCHEME_SCORE_FLOOR = 100
BLOCK_THRESHOLD = 70
WARN_THRESHOLD = 40
INVALID_URL_SCORE = 50
INVALID_URL_REASON = "Invalid URL"
