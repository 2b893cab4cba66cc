"""
Export of interface and peer configuration files, links and QR codes.

When a config storage path is configured the manager also follows interface
lifecycle events and keeps the exported interface files in sync.
"""

import logging
from pathlib import Path
from typing import Callable, Dict, Optional

from amnezia_link import build_amnezia_vpn_link
from collaborators import FileSystemRepository, QrImageEncoder, TemplateRenderer, WireguardRepository
from config import Config
from domain import (
    ConfigStyle, Interface, Peer, RequestContext,
    validate_admin_access_rights, validate_user_access_rights,
)
from events import EventBus, Topic
from qr import QrCodeEncoder
from templates import WgQuickRenderer

logger = logging.getLogger(__name__)


def strip_config_comments(config_text: str, display_name: str = '') -> str:
    """Drop comment lines, optionally putting a '# Name =' header first"""
    lines = []
    if display_name:
        lines.append(f"# Name = {display_name}")
    for line in config_text.splitlines():
        line = line.strip()
        if line.startswith('#'):
            continue
        lines.append(line)
    return ''.join(f"{line}\n" for line in lines)


class ConfigFileManager:
    """Manages the configuration files of interfaces and peers"""

    def __init__(self, cfg: Config, bus: EventBus, wg_repo: WireguardRepository, fs_repo: FileSystemRepository,
                 renderer: Optional[TemplateRenderer] = None, qr_encoder: Optional[QrImageEncoder] = None):
        self.cfg = cfg
        self.bus = bus
        self.wg = wg_repo
        self.fs = fs_repo
        self.renderer = renderer or WgQuickRenderer()
        self.qr_encoder = qr_encoder or QrCodeEncoder()

        if self.cfg.CONFIG_STORAGE_PATH:
            self._create_storage_directory()
            self._connect_to_message_bus()

    def _create_storage_directory(self):
        path = Path(self.cfg.CONFIG_STORAGE_PATH)
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise OSError(f"failed to create configuration storage path {path}: {e}") from e

    def _connect_to_message_bus(self):
        handlers: Dict[Topic, Callable] = {
            Topic.INTERFACE_CREATED: self._handle_interface_saved_event,
            Topic.INTERFACE_UPDATED: self._handle_interface_saved_event,
            Topic.INTERFACE_DELETED: self._handle_interface_delete_event,
            Topic.PEER_INTERFACE_UPDATED: self._handle_peer_interface_updated_event,
        }
        for topic, handler in handlers.items():
            self.bus.subscribe(topic, handler)

    # ---------- Event handlers ----------

    def _handle_interface_saved_event(self, iface: Interface):
        if not iface.save_config:
            return

        logger.debug(f"Handling interface save event for {iface.identifier}")
        try:
            self.persist_interface_config(RequestContext.system(), iface.identifier)
        except Exception as e:
            logger.error(f"Failed to automatically persist interface config {iface.identifier}: {e}")

    def _handle_interface_delete_event(self, iface: Interface):
        if not iface.save_config:
            return

        logger.debug(f"Handling interface delete event for {iface.identifier}")
        try:
            self.unpersist_interface_config(RequestContext.system(), iface.config_file_name)
        except Exception as e:
            logger.error(f"Failed to remove persisted interface config {iface.identifier}: {e}")

    def _handle_peer_interface_updated_event(self, interface_id: str):
        ctx = RequestContext.system()
        try:
            iface = self.wg.get_interface(ctx, interface_id)
        except Exception as e:
            logger.error(f"Failed to load interface {interface_id}: {e}")
            return

        if not iface.save_config:
            return

        logger.debug(f"Handling peer interface updated event for {interface_id}")
        try:
            self.persist_interface_config(ctx, iface.identifier)
        except Exception as e:
            logger.error(f"Failed to automatically persist interface config {interface_id}: {e}")

    # ---------- Exports ----------

    def get_interface_config(self, ctx: RequestContext, interface_id: str) -> str:
        """Return the wg-quick config of the interface and its peers"""
        validate_admin_access_rights(ctx)

        ctx.raise_if_cancelled()
        iface, peers = self.wg.get_interface_and_peers(ctx, interface_id)
        return self.renderer.render_interface_config(iface, peers)

    def _load_peer(self, ctx: RequestContext, peer_id: str) -> Peer:
        ctx.raise_if_cancelled()
        peer = self.wg.get_peer(ctx, peer_id)
        validate_user_access_rights(ctx, peer.user_identifier)
        return peer

    def _load_interface(self, ctx: RequestContext, interface_id: str) -> Interface:
        ctx.raise_if_cancelled()
        return self.wg.get_interface(ctx, interface_id)

    def get_peer_display_name(self, ctx: RequestContext, peer: Optional[Peer],
                              iface: Optional[Interface] = None) -> str:
        """'<interface> - <peer>' using display names where set"""
        if peer is None:
            return ''

        iface_name = peer.interface_identifier.strip()
        if iface is None:
            try:
                iface = self._load_interface(ctx, peer.interface_identifier)
            except Exception as e:
                logger.debug(f"Interface {peer.interface_identifier} of peer {peer.identifier} not loaded: {e}")
        if iface is not None:
            iface_name = iface.display_name.strip() or iface.identifier.strip() or iface_name

        peer_name = peer.display_name.strip() or peer.identifier.strip()

        if not iface_name:
            return peer_name
        if not peer_name:
            return iface_name
        return f"{iface_name} - {peer_name}"

    def get_peer_config(self, ctx: RequestContext, peer_id: str, style: ConfigStyle = ConfigStyle.WG_QUICK) -> str:
        """Return the peer's config with a '# Name =' header for importers"""
        peer = self._load_peer(ctx, peer_id)
        iface = self._load_interface(ctx, peer.interface_identifier)

        cfg_text = self.renderer.render_peer_config(peer, style, iface)

        display_name = self.get_peer_display_name(ctx, peer, iface)
        if display_name:
            return f"# Name = {display_name}\n" + cfg_text
        return cfg_text

    def _build_vpn_link(self, ctx: RequestContext, peer: Peer, iface: Interface) -> str:
        display_name = self.get_peer_display_name(ctx, peer, iface)

        # the link always embeds the wg-quick config so Address/DNS/MTU are present
        cfg_text = self.renderer.render_peer_config(peer, ConfigStyle.WG_QUICK, iface)
        cfg_text = strip_config_comments(cfg_text, display_name)

        return build_amnezia_vpn_link(peer, iface, display_name, cfg_text,
                                      compression_level=self.cfg.LINK_COMPRESSION_LEVEL)

    def get_peer_vpn_link(self, ctx: RequestContext, peer_id: str) -> str:
        """Return the vpn:// link of a peer on an AmneziaWG interface"""
        peer = self._load_peer(ctx, peer_id)
        iface = self._load_interface(ctx, peer.interface_identifier)
        return self._build_vpn_link(ctx, peer, iface)

    def get_peer_qr_payload(self, ctx: RequestContext, peer_id: str, style: ConfigStyle = ConfigStyle.WG_QUICK) -> str:
        """Text to put into the peer's QR code.

        AmneziaWG peers get the vpn:// link, all others the config without comments.
        """
        peer = self._load_peer(ctx, peer_id)
        iface = self._load_interface(ctx, peer.interface_identifier)

        if iface.has_advanced_security:
            return self._build_vpn_link(ctx, peer, iface)

        cfg_text = self.renderer.render_peer_config(peer, style, iface)
        return strip_config_comments(cfg_text)

    def get_peer_config_qr_code(self, ctx: RequestContext, peer_id: str,
                                style: ConfigStyle = ConfigStyle.WG_QUICK) -> bytes:
        """Return a PNG QR code of the peer's config or link"""
        payload = self.get_peer_qr_payload(ctx, peer_id, style)
        return self.qr_encoder.encode(payload)

    # ---------- Files ----------

    def persist_interface_config(self, ctx: RequestContext, interface_id: str) -> None:
        """Write the interface config to the config storage"""
        ctx.raise_if_cancelled()
        iface, peers = self.wg.get_interface_and_peers(ctx, interface_id)

        cfg_text = self.renderer.render_interface_config(iface, peers)

        ctx.raise_if_cancelled()
        self.fs.write_file(iface.config_file_name, cfg_text)
        logger.info(f"Persisted interface config {iface.config_file_name}")

    def unpersist_interface_config(self, ctx: RequestContext, filename: str) -> None:
        """Remove a persisted interface config from the config storage"""
        ctx.raise_if_cancelled()
        self.fs.delete_file(filename)
        logger.info(f"Removed interface config {filename}")
