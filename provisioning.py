"""
First-start provisioning of interfaces from a declarative YAML file.

Example provisioning.yaml:

    interfaces:
      - identifier: awg0
        display_name: AmneziaWG
        mode: server
        peer_def_endpoint: vpn.example.com:51820
        peer_def_dns: [1.1.1.1, 1.0.0.1]
        advanced_security:
          jc: 4
          jmin: 50
          jmax: 1000
          h1: "0x5f3a1c27"
"""

import os
import ipaddress
import logging
from pathlib import Path
from typing import List, Optional

import pydantic
import yaml
from pydantic import BaseModel, ConfigDict, field_validator

import awg_params
from awg_params import AdvancedSecurityParams
from collaborators import WireguardRepository
from config import Config, WIREGUARD_MODE_AMNEZIAWG
from domain import (
    DEFAULT_MTU, Interface, InterfaceMode, KeyPair, RequestContext,
    generate_keypair, public_key_from_private, validate_admin_access_rights,
)
from errors import ValidationError
from events import EventBus, Topic

logger = logging.getLogger(__name__)

VALID_MODES = ('server', 'client', 'any')


def _number_to_str(v):
    # YAML reads unquoted 1234 or 0x10 as int
    if isinstance(v, int) and not isinstance(v, bool):
        return str(v)
    return v


class ProvisioningAdvancedSecurity(BaseModel):
    model_config = ConfigDict(extra='forbid')

    jc: int = 0
    jmin: int = 0
    jmax: int = 0

    s1: int = 0
    s2: int = 0
    s3: int = 0
    s4: int = 0

    h1: str = ''
    h2: str = ''
    h3: str = ''
    h4: str = ''

    i1: Optional[str] = None
    i2: Optional[str] = None
    i3: Optional[str] = None
    i4: Optional[str] = None
    i5: Optional[str] = None

    @field_validator('h1', 'h2', 'h3', 'h4', 'i1', 'i2', 'i3', 'i4', 'i5', mode='before')
    @classmethod
    def numbers_as_text(cls, v):
        return _number_to_str(v)

    def to_params(self) -> AdvancedSecurityParams:
        return AdvancedSecurityParams(**self.model_dump())


class ProvisioningInterface(BaseModel):
    model_config = ConfigDict(extra='forbid')

    identifier: str = ''
    display_name: str = ''
    mode: str = ''  # server, client, any; empty means server

    enabled: Optional[bool] = None  # default: true

    private_key: str = ''
    listen_port: int = 0
    addresses: List[str] = []

    dns: List[str] = []
    dns_search: List[str] = []

    mtu: int = 0
    firewall_mark: int = 0
    routing_table: str = ''

    pre_up: str = ''
    post_up: str = ''
    pre_down: str = ''
    post_down: str = ''

    save_config: Optional[bool] = None  # default: config storage path is set
    notes: str = ''

    peer_def_network: List[str] = []
    peer_def_dns: List[str] = []
    peer_def_dns_search: List[str] = []
    peer_def_endpoint: str = ''
    peer_def_allowed_ips: List[str] = []
    peer_def_mtu: int = 0
    peer_def_persistent_keepalive: int = 0
    peer_def_firewall_mark: int = 0
    peer_def_routing_table: str = ''
    peer_def_pre_up: str = ''
    peer_def_post_up: str = ''
    peer_def_pre_down: str = ''
    peer_def_post_down: str = ''

    advanced_security: Optional[ProvisioningAdvancedSecurity] = None

    @field_validator('routing_table', 'peer_def_routing_table', mode='before')
    @classmethod
    def routing_table_as_text(cls, v):
        return _number_to_str(v)


class ProvisioningSpec(BaseModel):
    model_config = ConfigDict(extra='forbid')

    interfaces: List[ProvisioningInterface] = []


def effective_mode(raw: str) -> InterfaceMode:
    """Interface mode of a provisioning entry, an empty mode means server"""
    mode = (raw or '').strip().lower()
    if mode == '':
        return InterfaceMode.SERVER
    if mode not in VALID_MODES:
        raise ValidationError(f"mode must be one of: {', '.join(VALID_MODES)}")
    return InterfaceMode(mode)


def _validate_cidr_list(field: str, cidrs: List[str]) -> None:
    for i, raw in enumerate(cidrs):
        val = raw.strip()
        if val == '':
            raise ValidationError(f"{field}[{i}] must not be empty")
        try:
            ipaddress.ip_interface(val)
        except ValueError as e:
            raise ValidationError(f"{field}[{i}] invalid CIDR {raw!r}: {e}") from e
        if '/' not in val:
            raise ValidationError(f"{field}[{i}] invalid CIDR {raw!r}: missing prefix length")


def validate_provisioning_spec(spec: ProvisioningSpec, wireguard_mode: Optional[str] = None) -> None:
    """Reject the first invalid interface entry with a ValidationError.

    The entries themselves are left untouched.
    """
    seen = set()
    for idx, pi in enumerate(spec.interfaces):
        ident = pi.identifier.strip()
        if ident == '':
            raise ValidationError(f"provisioning.interfaces[{idx}].identifier must not be empty")
        if ident in seen:
            raise ValidationError(f"provisioning.interfaces.identifier {ident!r} is not unique")
        seen.add(ident)

        field = f"provisioning.interfaces[{ident}]"
        try:
            effective_mode(pi.mode)
        except ValidationError as e:
            raise ValidationError(f"{field}.{e}") from e

        if pi.listen_port != 0 and not 1 <= pi.listen_port <= 65535:
            raise ValidationError(f"{field}.listen_port must be 0 or between 1 and 65535")
        if pi.mtu < 0:
            raise ValidationError(f"{field}.mtu must be >= 0")
        if pi.peer_def_mtu < 0:
            raise ValidationError(f"{field}.peer_def_mtu must be >= 0")
        if pi.peer_def_persistent_keepalive < 0:
            raise ValidationError(f"{field}.peer_def_persistent_keepalive must be >= 0")

        if pi.private_key.strip() and not public_key_from_private(pi.private_key):
            raise ValidationError(f"{field}.private_key is not a valid WireGuard key")

        _validate_cidr_list(f"{field}.addresses", pi.addresses)
        _validate_cidr_list(f"{field}.peer_def_allowed_ips", pi.peer_def_allowed_ips)
        _validate_cidr_list(f"{field}.peer_def_network", pi.peer_def_network)

        if pi.advanced_security is not None:
            if wireguard_mode is not None and wireguard_mode != WIREGUARD_MODE_AMNEZIAWG:
                raise ValidationError(
                    f"{field}.advanced_security is only supported with wireguard mode {WIREGUARD_MODE_AMNEZIAWG!r}")
            awg_params.validate(pi.advanced_security.to_params(), f"{field}.advanced_security")

        # non-fatal hints for common misconfigurations
        if pi.dns and not pi.peer_def_dns:
            logger.warning(f"provisioning: interface {ident} dns set but peer_def_dns is empty; "
                           f"peers will not inherit dns")
        if pi.mtu != 0 and pi.peer_def_mtu == 0:
            logger.warning(f"provisioning: interface {ident} mtu {pi.mtu} set but peer_def_mtu is not set; "
                           f"peers will use default mtu")


def load_provisioning_spec(path, cfg: Optional[Config] = None) -> ProvisioningSpec:
    """Read and validate the provisioning file, $VAR references are expanded"""
    cfg = cfg or Config()
    path = Path(path)
    if not path.exists():
        logger.warning(f"Provisioning file {path} not found, nothing to provision")
        return ProvisioningSpec()

    text = os.path.expandvars(path.read_text(encoding='utf-8'))
    try:
        documents = [doc for doc in yaml.safe_load_all(text)]
    except yaml.YAMLError as e:
        raise ValidationError(f"yaml error in {path}: {e}") from e

    if len(documents) > 1:
        raise ValidationError(f"yaml error in {path}: unexpected extra document")
    data = documents[0] if documents else None
    if data is None:
        return ProvisioningSpec()
    if isinstance(data, dict) and 'provisioning' in data:
        data = data['provisioning'] or {}

    try:
        spec = ProvisioningSpec.model_validate(data)
    except pydantic.ValidationError as e:
        raise ValidationError(f"invalid provisioning file {path}: {e}") from e

    validate_provisioning_spec(spec, cfg.WIREGUARD_MODE)
    return spec


class _ResourceAllocator:
    """Hands out listen ports and networks in order, skipping anything already taken"""

    def __init__(self, cfg: Config, spec: ProvisioningSpec):
        self.cfg = cfg
        self.used_ports = {pi.listen_port for pi in spec.interfaces if pi.listen_port}
        self.used_networks = [
            ipaddress.ip_interface(a.strip()).network
            for pi in spec.interfaces for a in pi.addresses
        ]

    def listen_port(self) -> int:
        port = self.cfg.START_LISTEN_PORT
        while port in self.used_ports:
            port += 1
        if port > 65535:
            raise ValidationError("provisioning: no free listen port left")
        self.used_ports.add(port)
        return port

    def _network(self, start: str):
        try:
            net = ipaddress.ip_network(start, strict=False)
        except ValueError as e:
            raise ValidationError(f"provisioning: invalid start network {start!r}: {e}") from e
        while any(net.overlaps(used) for used in self.used_networks if used.version == net.version):
            try:
                net = type(net)((int(net.network_address) + net.num_addresses, net.prefixlen))
            except ValueError as e:
                raise ValidationError(f"provisioning: address space after {start} exhausted") from e
        self.used_networks.append(net)
        return net

    def addresses(self) -> List[str]:
        starts = [self.cfg.START_CIDR_V4]
        if self.cfg.USE_IP_V6:
            starts.append(self.cfg.START_CIDR_V6)

        out = []
        for start in starts:
            net = self._network(start)
            out.append(f"{next(net.hosts())}/{net.prefixlen}")
        return out


class InterfaceBootstrapper:
    """Creates the provisioned interfaces when the store is still empty.

    The run is best effort: interfaces are saved one by one and an error stops
    the loop without removing the interfaces saved before it.
    """

    def __init__(self, cfg: Config, repo: WireguardRepository, bus: Optional[EventBus] = None):
        self.cfg = cfg
        self.repo = repo
        self.bus = bus

    def bootstrap(self, ctx: RequestContext, spec: ProvisioningSpec) -> bool:
        validate_admin_access_rights(ctx)

        if not spec.interfaces:
            logger.debug("No interfaces to provision")
            return False

        ctx.raise_if_cancelled()
        existing = self.repo.list_interfaces(ctx)
        if existing:
            logger.info(f"Skipping provisioning, {len(existing)} interface(s) already exist")
            return False

        validate_provisioning_spec(spec, self.cfg.WIREGUARD_MODE)

        allocator = _ResourceAllocator(self.cfg, spec)
        interfaces = [self._build_interface(pi, allocator) for pi in spec.interfaces]

        for iface in interfaces:
            ctx.raise_if_cancelled()
            self.repo.save_interface(ctx, iface)
            logger.info(f"Provisioned interface {iface.identifier} "
                        f"({iface.client_type.name.lower()}, port {iface.listen_port}, "
                        f"{', '.join(iface.addresses)})")
            if self.bus is not None:
                self.bus.publish(Topic.INTERFACE_CREATED, iface)

        return True

    def _build_interface(self, pi: ProvisioningInterface, allocator: _ResourceAllocator) -> Interface:
        ident = pi.identifier.strip()

        private_key = pi.private_key.strip()
        if private_key:
            key_pair = KeyPair(private_key, public_key_from_private(private_key))
        else:
            key_pair = KeyPair(*generate_keypair())

        addresses = [a.strip() for a in pi.addresses] or allocator.addresses()
        peer_def_network = [n.strip() for n in pi.peer_def_network] or [
            str(ipaddress.ip_interface(a).network) for a in addresses
        ]

        advanced_security = None
        if pi.advanced_security is not None:
            advanced_security = awg_params.copy_if_set(pi.advanced_security.to_params())

        return Interface(
            identifier=ident,
            display_name=pi.display_name.strip() or ident,
            mode=effective_mode(pi.mode),
            disabled=pi.enabled is False,
            key_pair=key_pair,
            listen_port=pi.listen_port or allocator.listen_port(),
            addresses=addresses,
            dns=', '.join(pi.dns),
            dns_search=', '.join(pi.dns_search),
            mtu=pi.mtu or DEFAULT_MTU,
            firewall_mark=pi.firewall_mark,
            routing_table=pi.routing_table,
            pre_up=pi.pre_up,
            post_up=pi.post_up,
            pre_down=pi.pre_down,
            post_down=pi.post_down,
            save_config=pi.save_config if pi.save_config is not None else bool(self.cfg.CONFIG_STORAGE_PATH),
            notes=pi.notes,
            peer_def_network=peer_def_network,
            peer_def_dns=', '.join(pi.peer_def_dns),
            peer_def_dns_search=', '.join(pi.peer_def_dns_search),
            peer_def_endpoint=pi.peer_def_endpoint.strip(),
            peer_def_allowed_ips=', '.join(pi.peer_def_allowed_ips),
            peer_def_mtu=pi.peer_def_mtu,
            peer_def_persistent_keepalive=pi.peer_def_persistent_keepalive,
            peer_def_firewall_mark=pi.peer_def_firewall_mark,
            peer_def_routing_table=pi.peer_def_routing_table,
            peer_def_pre_up=pi.peer_def_pre_up,
            peer_def_post_up=pi.peer_def_post_up,
            peer_def_pre_down=pi.peer_def_pre_down,
            peer_def_post_down=pi.peer_def_post_down,
            advanced_security=advanced_security,
        )
