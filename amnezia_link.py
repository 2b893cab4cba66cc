"""
Builder for the vpn:// links imported by the AmneziaVPN client.

The link is "vpn://" followed by unpadded url-safe base64 of a Qt qCompress
frame: the big-endian length of the JSON envelope, then its zlib stream.
The envelope describes one "amnezia-awg" container whose "last_config" field
holds a second JSON document with the client settings. Field names and
omission rules must match what the client app parses.
"""

import base64
import ipaddress
import json
import logging
import struct
import zlib
from typing import List, Optional, Tuple

from awg_params import AdvancedSecurityParams, is_empty, is_set_int, is_set_str
from domain import Interface, Peer, public_key_from_private
from errors import PreconditionError, SerializationError

logger = logging.getLogger(__name__)

CONTAINER_NAME = 'amnezia-awg'
TRANSPORT_PROTO = 'udp'

DEFAULT_HOST = '127.0.0.1'
DEFAULT_PORT = 51820
DEFAULT_DNS1 = '1.1.1.1'
DEFAULT_DNS2 = '1.0.0.1'
DEFAULT_ALLOWED_IPS = '0.0.0.0/0,::/0'
DEFAULT_MTU = '1280'
DEFAULT_KEEPALIVE = '25'
DEFAULT_COMPRESSION_LEVEL = 8


def _split_host_port(hostport: str) -> Tuple[str, str]:
    """Split "host:port" or "[host]:port", raising ValueError when there is no port"""
    if hostport.startswith('['):
        end = hostport.find(']')
        if end < 0:
            raise ValueError(f"missing ']' in address {hostport!r}")
        host, rest = hostport[1:end], hostport[end + 1:]
        if not rest.startswith(':'):
            raise ValueError(f"missing port in address {hostport!r}")
        port = rest[1:]
        if ':' in port:
            raise ValueError(f"too many colons in address {hostport!r}")
        return host, port

    colons = hostport.count(':')
    if colons == 0:
        raise ValueError(f"missing port in address {hostport!r}")
    if colons > 1:
        raise ValueError(f"too many colons in address {hostport!r}")
    host, port = hostport.split(':')
    return host, port


def parse_endpoint_host_port(endpoint: Optional[str]) -> Tuple[str, int]:
    """Resolve the server host and port, falling back to 127.0.0.1:51820"""
    host, port = DEFAULT_HOST, DEFAULT_PORT

    endpoint = (endpoint or '').strip()
    if endpoint == '':
        return host, port

    try:
        h, p = _split_host_port(endpoint)
    except ValueError:
        return endpoint, port

    if h.strip():
        host = h.strip()
    if p.isascii() and p.isdigit():
        port = int(p)
    return host, port


def split_csv_or_default(value: Optional[str], fallback: str) -> List[str]:
    raw = (value or '').strip()
    if raw == '':
        raw = fallback
    raw = raw.replace(' ', '')
    if raw == '':
        return []

    return [item.strip() for item in raw.split(',') if item.strip()]


def pick_dns_servers(dns: Optional[str]) -> Tuple[str, str]:
    parts = split_csv_or_default(dns, f"{DEFAULT_DNS1},{DEFAULT_DNS2}")
    dns1 = parts[0] if len(parts) > 0 else DEFAULT_DNS1
    dns2 = parts[1] if len(parts) > 1 else DEFAULT_DNS2
    return dns1, dns2


def qt_compress(data: bytes, level: int = DEFAULT_COMPRESSION_LEVEL) -> bytes:
    """Frame data the way Qt's qCompress does: uint32 BE size, then zlib"""
    if len(data) > 0xFFFFFFFF:
        raise SerializationError(f"payload too large to frame: {len(data)} bytes")
    try:
        compressed = zlib.compress(data, level)
    except zlib.error as e:
        raise SerializationError(f"zlib compress: {e}") from e
    return struct.pack('>I', len(data)) + compressed


def _obfuscation_fields(adv: AdvancedSecurityParams) -> dict:
    """Jc/H/S/I fields in client order; optional ones are left out when unset"""
    out = {
        'H1': (adv.h1 or '').strip(),
        'H2': (adv.h2 or '').strip(),
        'H3': (adv.h3 or '').strip(),
        'H4': (adv.h4 or '').strip(),
        'Jc': str(adv.jc),
        'Jmax': str(adv.jmax),
        'Jmin': str(adv.jmin),
        'S1': str(adv.s1),
        'S2': str(adv.s2),
    }
    if is_set_int(adv.s3):
        out['S3'] = str(adv.s3)
    if is_set_int(adv.s4):
        out['S4'] = str(adv.s4)
    for name in ('i1', 'i2', 'i3', 'i4', 'i5'):
        value = getattr(adv, name)
        if is_set_str(value):
            out[name.upper()] = value.strip()
    return out


def _client_ip(peer: Peer) -> str:
    if not peer.addresses:
        return ''
    raw = peer.addresses[0].strip()
    try:
        return str(ipaddress.ip_interface(raw).ip)
    except ValueError:
        return raw


def _to_json(obj) -> bytes:
    try:
        return json.dumps(obj, separators=(',', ':'), ensure_ascii=False).encode('utf-8')
    except (TypeError, ValueError) as e:
        raise SerializationError(f"marshal json: {e}") from e


def build_amnezia_vpn_link(
    peer: Optional[Peer],
    iface: Optional[Interface],
    description: str,
    config_text: str,
    compression_level: int = DEFAULT_COMPRESSION_LEVEL,
) -> str:
    """Build the vpn:// link for one peer of an AmneziaWG interface.

    Args:
        peer: the exported peer
        iface: the interface owning the peer, it must carry obfuscation parameters
        description: name shown by the client app
        config_text: the rendered wg-quick config of the peer

    Returns:
        The link string, identical for identical input
    """
    if peer is None:
        raise PreconditionError("nil peer")
    if iface is None or is_empty(iface.advanced_security):
        raise PreconditionError(f"missing advanced security for peer {peer.identifier}")

    endpoint_host, endpoint_port = parse_endpoint_host_port(peer.endpoint.value)
    dns1, dns2 = pick_dns_servers(peer.dns.value)

    private_key = peer.key_pair.private_key
    client_pub_key = public_key_from_private(private_key) if private_key else ''
    if not client_pub_key:
        client_pub_key = peer.key_pair.public_key

    allowed_ips = split_csv_or_default(peer.allowed_ips.value, DEFAULT_ALLOWED_IPS)
    mtu = str(peer.mtu.value) if peer.mtu.value else DEFAULT_MTU
    keep_alive = str(peer.persistent_keepalive.value) if peer.persistent_keepalive.value else DEFAULT_KEEPALIVE

    server_pub_key = (peer.endpoint_public_key.value or '').strip() or iface.key_pair.public_key.strip()
    obfuscation = _obfuscation_fields(iface.advanced_security)

    last_config = dict(obfuscation)
    last_config.update({
        'allowed_ips': allowed_ips,
        'clientId': client_pub_key,
        'client_ip': _client_ip(peer),
        'client_priv_key': private_key,
        'client_pub_key': client_pub_key,
        'config': config_text,
        'hostName': endpoint_host,
        'mtu': mtu,
        'persistent_keep_alive': keep_alive,
        'port': endpoint_port,
        'psk_key': (peer.preshared_key or '').strip(),
        'server_pub_key': server_pub_key,
    })
    last_config_json = _to_json(last_config).decode('utf-8')

    awg = dict(obfuscation)
    awg.update({
        'last_config': last_config_json,
        'port': str(endpoint_port),
        'transport_proto': TRANSPORT_PROTO,
    })
    envelope = {
        'containers': [{'awg': awg, 'container': CONTAINER_NAME}],
        'defaultContainer': CONTAINER_NAME,
        'description': description,
        'dns1': dns1,
        'dns2': dns2,
        'hostName': endpoint_host,
    }

    framed = qt_compress(_to_json(envelope), compression_level)
    encoded = base64.urlsafe_b64encode(framed).rstrip(b'=').decode('ascii')
    logger.debug(f"Built vpn link for peer {peer.identifier} ({len(encoded)} chars)")
    return 'vpn://' + encoded
