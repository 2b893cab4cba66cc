"""
Interfaces, peers and the request context shared by all modules.
"""

import base64
import ipaddress
import secrets
import threading
from dataclasses import dataclass, field, fields, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey
from cryptography.hazmat.primitives import serialization

import awg_params
from awg_params import AdvancedSecurityParams, ClientType
from errors import AuthorizationError, ContextCancelledError

DEFAULT_MTU = 1420


class InterfaceMode(str, Enum):
    SERVER = 'server'
    CLIENT = 'client'
    ANY = 'any'


class ConfigStyle(str, Enum):
    WG_QUICK = 'wgquick'
    RAW = 'wg'


# ---------- Keys ----------

def generate_keypair() -> Tuple[str, str]:
    """Generate a WireGuard keypair as base64 strings"""
    private_key = X25519PrivateKey.generate()
    private_key_bytes = private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption()
    )
    public_key_bytes = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )

    private_key_b64 = base64.b64encode(private_key_bytes).decode('ascii')
    public_key_b64 = base64.b64encode(public_key_bytes).decode('ascii')

    return private_key_b64, public_key_b64


def public_key_from_private(private_key: str) -> str:
    """Derive the public key, or return '' if the private key is unusable"""
    try:
        raw = base64.b64decode(private_key.strip(), validate=True)
        key = X25519PrivateKey.from_private_bytes(raw)
    except (ValueError, TypeError, AttributeError):
        return ''
    public_key_bytes = key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )
    return base64.b64encode(public_key_bytes).decode('ascii')


def generate_preshared_key() -> str:
    return base64.b64encode(secrets.token_bytes(32)).decode('ascii')


@dataclass
class KeyPair:
    private_key: str = ''
    public_key: str = ''


@dataclass
class ConfigOption:
    """A peer setting together with whether it may differ from the interface default"""
    value: Any = None
    overridable: bool = True


# ---------- Entities ----------

@dataclass
class Interface:
    identifier: str
    display_name: str = ''
    mode: InterfaceMode = InterfaceMode.SERVER
    disabled: bool = False

    key_pair: KeyPair = field(default_factory=KeyPair)
    listen_port: int = 0
    addresses: List[str] = field(default_factory=list)
    dns: str = ''
    dns_search: str = ''

    mtu: int = DEFAULT_MTU
    firewall_mark: int = 0
    routing_table: str = ''

    pre_up: str = ''
    post_up: str = ''
    pre_down: str = ''
    post_down: str = ''

    save_config: bool = False
    notes: str = ''

    # defaults for new peers
    peer_def_network: List[str] = field(default_factory=list)
    peer_def_dns: str = ''
    peer_def_dns_search: str = ''
    peer_def_endpoint: str = ''
    peer_def_allowed_ips: str = ''
    peer_def_mtu: int = 0
    peer_def_persistent_keepalive: int = 0
    peer_def_firewall_mark: int = 0
    peer_def_routing_table: str = ''
    peer_def_pre_up: str = ''
    peer_def_post_up: str = ''
    peer_def_pre_down: str = ''
    peer_def_post_down: str = ''

    advanced_security: Optional[AdvancedSecurityParams] = None

    @property
    def client_type(self) -> ClientType:
        return awg_params.client_type_for(self.advanced_security)

    @property
    def has_advanced_security(self) -> bool:
        return self.client_type == ClientType.AMNEZIA

    @property
    def config_file_name(self) -> str:
        return f"{self.identifier}.conf"


@dataclass
class Peer:
    identifier: str
    interface_identifier: str
    display_name: str = ''
    user_identifier: str = ''
    disabled: bool = False
    expires_at: Optional[datetime] = None
    notes: str = ''

    key_pair: KeyPair = field(default_factory=KeyPair)
    preshared_key: str = ''
    addresses: List[str] = field(default_factory=list)
    extra_allowed_ips: List[str] = field(default_factory=list)

    endpoint: ConfigOption = field(default_factory=lambda: ConfigOption(''))
    endpoint_public_key: ConfigOption = field(default_factory=lambda: ConfigOption(''))
    allowed_ips: ConfigOption = field(default_factory=lambda: ConfigOption(''))
    dns: ConfigOption = field(default_factory=lambda: ConfigOption(''))
    dns_search: ConfigOption = field(default_factory=lambda: ConfigOption(''))
    mtu: ConfigOption = field(default_factory=lambda: ConfigOption(0))
    persistent_keepalive: ConfigOption = field(default_factory=lambda: ConfigOption(0))
    firewall_mark: ConfigOption = field(default_factory=lambda: ConfigOption(0))
    routing_table: ConfigOption = field(default_factory=lambda: ConfigOption(''))
    pre_up: ConfigOption = field(default_factory=lambda: ConfigOption(''))
    post_up: ConfigOption = field(default_factory=lambda: ConfigOption(''))
    pre_down: ConfigOption = field(default_factory=lambda: ConfigOption(''))
    post_down: ConfigOption = field(default_factory=lambda: ConfigOption(''))

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or datetime.now(self.expires_at.tzinfo))


_PEER_OPTIONS = tuple(f.name for f in fields(Peer) if f.type in (ConfigOption, 'ConfigOption'))


def interface_to_dict(iface: Interface) -> Dict[str, Any]:
    data = asdict(iface)
    data['mode'] = iface.mode.value
    data['advanced_security'] = (
        awg_params.to_dict(iface.advanced_security) if iface.advanced_security else None)
    return data


def interface_from_dict(data: Dict[str, Any]) -> Interface:
    data = dict(data)
    data['key_pair'] = KeyPair(**data.get('key_pair', {}))
    data['mode'] = InterfaceMode(data.get('mode') or InterfaceMode.SERVER.value)
    data['advanced_security'] = awg_params.from_dict(data.get('advanced_security'))
    known = {f.name for f in fields(Interface)}
    return Interface(**{k: v for k, v in data.items() if k in known})


def peer_to_dict(peer: Peer) -> Dict[str, Any]:
    data = asdict(peer)
    data['expires_at'] = peer.expires_at.isoformat() if peer.expires_at else None
    return data


def peer_from_dict(data: Dict[str, Any]) -> Peer:
    data = dict(data)
    data['key_pair'] = KeyPair(**data.get('key_pair', {}))
    for name in _PEER_OPTIONS:
        if name in data:
            data[name] = ConfigOption(**data[name])
    if data.get('expires_at'):
        data['expires_at'] = datetime.fromisoformat(data['expires_at'])
    known = {f.name for f in fields(Peer)}
    return Peer(**{k: v for k, v in data.items() if k in known})


def _next_free_host(networks: List[str], used: set) -> List[str]:
    addresses = []
    for raw in networks:
        net = ipaddress.ip_network(raw, strict=False)
        for host in net.hosts():
            if host not in used:
                addresses.append(f"{host}/{net.max_prefixlen}")
                break
        else:
            raise RuntimeError(f"No free IP available in {net}")
    return addresses


def new_peer(
    iface: Interface,
    identifier: str,
    display_name: str = '',
    user_identifier: str = '',
    existing_peers: Optional[List[Peer]] = None,
) -> Peer:
    """Build a peer from the interface's peer defaults with fresh keys and addresses"""
    used = set()
    for raw in iface.addresses:
        used.add(ipaddress.ip_interface(raw).ip)
    for p in existing_peers or []:
        for raw in p.addresses:
            used.add(ipaddress.ip_interface(raw).ip)

    networks = iface.peer_def_network or [str(ipaddress.ip_interface(a).network) for a in iface.addresses]
    private_key, public_key = generate_keypair()

    return Peer(
        identifier=identifier,
        interface_identifier=iface.identifier,
        display_name=display_name or identifier,
        user_identifier=user_identifier,
        key_pair=KeyPair(private_key, public_key),
        preshared_key=generate_preshared_key(),
        addresses=_next_free_host(networks, used),
        endpoint=ConfigOption(iface.peer_def_endpoint),
        endpoint_public_key=ConfigOption(iface.key_pair.public_key),
        allowed_ips=ConfigOption(iface.peer_def_allowed_ips),
        dns=ConfigOption(iface.peer_def_dns),
        dns_search=ConfigOption(iface.peer_def_dns_search),
        mtu=ConfigOption(iface.peer_def_mtu),
        persistent_keepalive=ConfigOption(iface.peer_def_persistent_keepalive),
        firewall_mark=ConfigOption(iface.peer_def_firewall_mark),
        routing_table=ConfigOption(iface.peer_def_routing_table),
        pre_up=ConfigOption(iface.peer_def_pre_up),
        post_up=ConfigOption(iface.peer_def_post_up),
        pre_down=ConfigOption(iface.peer_def_pre_down),
        post_down=ConfigOption(iface.peer_def_post_down),
    )


# ---------- Request context ----------

@dataclass
class UserInfo:
    identifier: str
    is_admin: bool = False


SYSTEM_USER = UserInfo(identifier='_WG_SYS_ADMIN_', is_admin=True)


class RequestContext:
    """Caller identity plus a cancellation flag, passed through every operation"""

    def __init__(self, user: Optional[UserInfo] = None, cancel_event: Optional[threading.Event] = None):
        self.user = user
        self._cancel_event = cancel_event or threading.Event()

    @classmethod
    def system(cls) -> 'RequestContext':
        return cls(SYSTEM_USER)

    def cancel(self) -> None:
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise ContextCancelledError("context cancelled")


def validate_admin_access_rights(ctx: RequestContext) -> None:
    if ctx is None or ctx.user is None or not ctx.user.is_admin:
        raise AuthorizationError("insufficient permissions: administrator rights required")


def validate_user_access_rights(ctx: RequestContext, user_identifier: str) -> None:
    if ctx is None or ctx.user is None:
        raise AuthorizationError("insufficient permissions: no user information")
    if ctx.user.is_admin:
        return
    if not user_identifier or ctx.user.identifier != user_identifier:
        raise AuthorizationError(f"insufficient permissions: user {ctx.user.identifier} may not access this peer")
