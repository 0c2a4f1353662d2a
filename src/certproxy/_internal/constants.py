"""certproxy constants."""
import logging
from typing import Any

CLI_DEFAULTS: dict[str, Any] = dict(  # noqa
    config_files=[
        "/etc/certproxy/cli.ini",
    ],

    # Main parser
    verb="run",
    verbose_count=0,
    quiet=False,
    debug=False,
    max_log_backups=100,
    strict_permissions=False,

    # Declarations
    domains_file="/etc/certproxy/domains.conf",
    contact_email=None,

    # ACME
    server="https://acme-v02.api.letsencrypt.org/directory",
    staging=False,
    user_agent=None,
    key_type="rsa",
    rsa_key_size=2048,
    elliptic_curve="secp256r1",
    pref_challs=["http-01"],
    # nginx owns port 80 and forwards challenge requests to this port
    http01_port=8402,
    http01_address="",
    challenge_timeout=90,
    dns_auth_hook=None,
    dns_cleanup_hook=None,
    dns_propagation_seconds=10,

    # Renewal and retry policy
    renew_before="30 days",
    max_attempts=8,
    max_workers=4,

    # Scheduling
    interval="12 hours",
    watch_seconds=30,

    # Proxy
    nginx_ctl="nginx",
    nginx_conf="/etc/nginx/conf.d/certproxy.conf",
    nginx_pid_file="/run/nginx.pid",
    reload_cmd=None,
    health_url=None,
    health_timeout=10,
    hsts=True,

    # Paths
    config_dir="/etc/certproxy",
    work_dir="/var/lib/certproxy",
    logs_dir="/var/log/certproxy",
)
"""Defaults for CLI flags and `.NamespaceConfig` attributes."""

STAGING_URI = "https://acme-staging-v02.api.letsencrypt.org/directory"

QUIET_LOGGING_LEVEL = logging.ERROR
"""Logging level to use in quiet mode."""

DEFAULT_LOGGING_LEVEL = logging.WARNING
"""Default logging level to use when not in quiet mode."""

LOG_FILE = "certproxy.log"
"""Basename of the rotating log file in `logs_dir`."""

VERBS = ("run", "daemon", "status", "render")
"""Subcommands understood by the command line parser."""

CONFIG_DIRS_MODE = 0o755
"""Directory mode for certproxy directories."""

ARCHIVE_DIR = "archive"
"""Archive directory, relative to `config_dir`."""

LIVE_DIR = "live"
"""Live directory, relative to `config_dir`."""

ACCOUNTS_DIR = "accounts"
"""Directory where all accounts are saved, relative to `config_dir`."""

LOCKS_DIR = "locks"
"""Directory holding per-domain lock files, relative to `work_dir`."""

STATE_FILE = "status.json"
"""Reconciliation status file, relative to `work_dir`."""

APPLY_LOCK = ".apply.lock"
"""Lock file serializing render+apply cycles, in `locks_dir`."""

STAGED_SUFFIX = ".staged"
BACKUP_SUFFIX = ".previous"
HARNESS_SUFFIX = ".harness"

BACKOFF_BASE = 1.0
"""Initial retry delay in seconds."""

BACKOFF_CAP = 3600.0
"""Upper bound on the retry delay in seconds."""

BACKOFF_JITTER = 0.2
"""Relative jitter applied to each retry delay."""

ACME_CHALLENGE_PATH = "/.well-known/acme-challenge/"

SSL_OPTIONS = (
    ("ssl_session_cache", "shared:certproxy_SSL:10m"),
    ("ssl_session_timeout", "1440m"),
    ("ssl_session_tickets", "off"),
    ("ssl_protocols", "TLSv1.2 TLSv1.3"),
    ("ssl_prefer_server_ciphers", "off"),
    ("ssl_ciphers", "ECDHE-ECDSA-AES128-GCM-SHA256:ECDHE-RSA-AES128-GCM-SHA256:"
                    "ECDHE-ECDSA-AES256-GCM-SHA384:ECDHE-RSA-AES256-GCM-SHA384:"
                    "ECDHE-ECDSA-CHACHA20-POLY1305:ECDHE-RSA-CHACHA20-POLY1305:"
                    "DHE-RSA-AES128-GCM-SHA256:DHE-RSA-AES256-GCM-SHA384"),
)
"""Mozilla intermediate TLS settings emitted in every TLS server block."""

HSTS_ARGS = ['Strict-Transport-Security', '"max-age=31536000"', 'always']

PROXY_HEADERS = (
    ("Host", "$host"),
    ("X-Real-IP", "$remote_addr"),
    ("X-Forwarded-For", "$proxy_add_x_forwarded_for"),
    ("X-Forwarded-Proto", "$scheme"),
)
