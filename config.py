import os
import ipaddress
import logging
from dotenv import load_dotenv

from errors import ValidationError

load_dotenv()

logger = logging.getLogger(__name__)

WIREGUARD_MODE_DISABLED = 'disabled'
WIREGUARD_MODE_WIREGUARD = 'wireguard'
WIREGUARD_MODE_AMNEZIAWG = 'amneziawg'
WIREGUARD_MODES = (WIREGUARD_MODE_DISABLED, WIREGUARD_MODE_WIREGUARD, WIREGUARD_MODE_AMNEZIAWG)


def getenv_int(name: str, fallback: int) -> int:
    """Read an integer setting, keeping the fallback on garbage"""
    value = os.getenv(name)
    if value is None:
        return fallback
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Invalid int env {name}={value!r}, using fallback {fallback}")
        return fallback


def getenv_bool(name: str, fallback: bool) -> bool:
    """Read a boolean setting, keeping the fallback on garbage"""
    value = os.getenv(name)
    if value is None:
        return fallback
    value = value.strip().lower()
    if value in ('1', 't', 'true', 'yes', 'on'):
        return True
    if value in ('0', 'f', 'false', 'no', 'off'):
        return False
    logger.warning(f"Invalid bool env {name}={value!r}, using fallback {fallback}")
    return fallback


class Config:
    """Application configuration"""

    # WireGuard flavour managed by this host
    WIREGUARD_MODE = os.getenv('WIREGUARD_MODE', WIREGUARD_MODE_AMNEZIAWG).strip().lower()

    # Allocation defaults for interfaces created by provisioning
    START_LISTEN_PORT = getenv_int('START_LISTEN_PORT', 51820)
    START_CIDR_V4 = os.getenv('START_CIDR_V4', '10.11.12.0/24')
    START_CIDR_V6 = os.getenv('START_CIDR_V6', 'fdfd:d3ad:c0de:1234::0/64')
    USE_IP_V6 = getenv_bool('USE_IP_V6', False)

    # Directory for exported interface configs, empty disables the export
    CONFIG_STORAGE_PATH = os.getenv('CONFIG_STORAGE_PATH', '')

    # Data directory
    DATA_DIR = os.getenv('DATA_DIR', '/etc/amneziawg')
    INTERFACES_FILE = os.path.join(DATA_DIR, 'interfaces.json')

    # Declarative interface list applied on first start
    PROVISIONING_FILE = os.getenv('PROVISIONING_FILE', 'config/provisioning.yaml')

    # zlib level of vpn:// links, only affects the link length
    LINK_COMPRESSION_LEVEL = getenv_int('LINK_COMPRESSION_LEVEL', 8)

    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()

    def sanitize(self) -> None:
        """Normalize settings and reject unknown values"""
        self.WIREGUARD_MODE = (self.WIREGUARD_MODE or '').strip().lower() or WIREGUARD_MODE_DISABLED
        if self.WIREGUARD_MODE not in WIREGUARD_MODES:
            raise ValidationError(f"invalid wireguard mode {self.WIREGUARD_MODE!r}")
        if not 0 <= self.LINK_COMPRESSION_LEVEL <= 9:
            raise ValidationError(f"link compression level must be between 0 and 9, got {self.LINK_COMPRESSION_LEVEL}")
        if not 1 <= self.START_LISTEN_PORT <= 65535:
            raise ValidationError(f"start listen port must be between 1 and 65535, got {self.START_LISTEN_PORT}")
        for name, version in (('START_CIDR_V4', 4), ('START_CIDR_V6', 6)):
            value = getattr(self, name)
            try:
                net = ipaddress.ip_network(value, strict=False)
            except ValueError as e:
                raise ValidationError(f"invalid {name.lower()} {value!r}: {e}") from e
            if net.version != version:
                raise ValidationError(f"{name.lower()} {value!r} is not an IPv{version} network")

    def log_startup_values(self) -> None:
        logger.info(f"Configuration loaded, log level {self.LOG_LEVEL}")
        logger.debug(
            f"wireguard_mode={self.WIREGUARD_MODE} start_listen_port={self.START_LISTEN_PORT} "
            f"start_cidr_v4={self.START_CIDR_V4} start_cidr_v6={self.START_CIDR_V6} "
            f"use_ip_v6={self.USE_IP_V6} config_storage_path={self.CONFIG_STORAGE_PATH!r}"
        )
