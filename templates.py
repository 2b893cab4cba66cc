from typing import List

import awg_params
from amnezia_link import DEFAULT_ALLOWED_IPS
from domain import ConfigStyle, Interface, Peer


def _csv(value) -> str:
    if isinstance(value, (list, tuple)):
        items = value
    else:
        items = (value or '').split(',')
    return ', '.join(item.strip() for item in items if item and item.strip())


class WgQuickRenderer:
    """Renders interface and peer configs in wg-quick or plain wg format"""

    def render_interface_config(self, iface: Interface, peers: List[Peer]) -> str:
        lines = [
            f"# {iface.display_name or iface.identifier}",
            "[Interface]",
            f"PrivateKey = {iface.key_pair.private_key}",
        ]
        if iface.listen_port:
            lines.append(f"ListenPort = {iface.listen_port}")
        if iface.addresses:
            lines.append(f"Address = {_csv(iface.addresses)}")
        if iface.dns:
            dns = _csv(iface.dns)
            if iface.dns_search:
                dns += f", {_csv(iface.dns_search)}"
            lines.append(f"DNS = {dns}")
        if iface.mtu:
            lines.append(f"MTU = {iface.mtu}")
        if iface.firewall_mark:
            lines.append(f"FwMark = {iface.firewall_mark}")
        if iface.routing_table:
            lines.append(f"Table = {iface.routing_table}")

        # Obfuscation parameters
        lines.extend(awg_params.to_wg_quick_lines(iface.advanced_security))

        for key, value in (('PreUp', iface.pre_up), ('PostUp', iface.post_up),
                           ('PreDown', iface.pre_down), ('PostDown', iface.post_down)):
            if value:
                lines.append(f"{key} = {value}")

        for peer in peers:
            if peer.disabled or peer.is_expired():
                continue
            allowed_ips = list(peer.addresses) + list(peer.extra_allowed_ips)
            lines += [
                "",
                f"# {peer.display_name or peer.identifier}",
                "[Peer]",
                f"PublicKey = {peer.key_pair.public_key}",
            ]
            if peer.preshared_key:
                lines.append(f"PresharedKey = {peer.preshared_key}")
            lines.append(f"AllowedIPs = {_csv(allowed_ips)}")

        return "\n".join(lines) + "\n"

    def render_peer_config(self, peer: Peer, style: ConfigStyle, iface: Interface) -> str:
        wg_quick = ConfigStyle(style) == ConfigStyle.WG_QUICK

        lines = [
            "[Interface]",
            f"PrivateKey = {peer.key_pair.private_key}",
        ]
        if wg_quick:
            if peer.addresses:
                lines.append(f"Address = {_csv(peer.addresses)}")
            if peer.dns.value:
                dns = _csv(peer.dns.value)
                if peer.dns_search.value:
                    dns += f", {_csv(peer.dns_search.value)}"
                lines.append(f"DNS = {dns}")
            if peer.mtu.value:
                lines.append(f"MTU = {peer.mtu.value}")
            if peer.routing_table.value:
                lines.append(f"Table = {peer.routing_table.value}")
        if peer.firewall_mark.value:
            lines.append(f"FwMark = {peer.firewall_mark.value}")

        if iface.has_advanced_security:
            lines.append("# AmneziaWG obfuscation")
            lines.extend(awg_params.to_wg_quick_lines(iface.advanced_security))

        if wg_quick:
            for key, option in (('PreUp', peer.pre_up), ('PostUp', peer.post_up),
                                ('PreDown', peer.pre_down), ('PostDown', peer.post_down)):
                if option.value:
                    lines.append(f"{key} = {option.value}")

        lines += [
            "",
            "[Peer]",
            f"PublicKey = {peer.endpoint_public_key.value or iface.key_pair.public_key}",
        ]
        if peer.preshared_key:
            lines.append(f"PresharedKey = {peer.preshared_key}")
        lines.append(f"AllowedIPs = {_csv(peer.allowed_ips.value) or _csv(DEFAULT_ALLOWED_IPS)}")
        if peer.endpoint.value:
            lines.append(f"Endpoint = {peer.endpoint.value}")
        if peer.persistent_keepalive.value:
            lines.append(f"PersistentKeepalive = {peer.persistent_keepalive.value}")

        return "\n".join(lines) + "\n"
