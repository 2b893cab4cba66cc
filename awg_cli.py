#!/usr/bin/env python3
"""
Command line front end for the AmneziaWG portal core.

Provisions interfaces from the provisioning file and exports interface
configs, peer configs, vpn:// links and QR codes from the JSON store.
"""

import sys
import argparse
import logging
from pathlib import Path

from config import Config
from config_manager import ConfigFileManager
from domain import ConfigStyle, RequestContext, new_peer
from errors import PortalError
from events import EventBus, Topic
from provisioning import InterfaceBootstrapper, load_provisioning_spec
from storage import JsonWireguardRepository, LocalFileSystemRepository

logger = logging.getLogger(__name__)


def build_services(cfg: Config):
    """Wire up the store, the event bus and the config file manager"""
    bus = EventBus()
    repo = JsonWireguardRepository(cfg.INTERFACES_FILE)
    fs_repo = LocalFileSystemRepository(cfg.CONFIG_STORAGE_PATH or cfg.DATA_DIR)
    manager = ConfigFileManager(cfg, bus, repo, fs_repo)
    return bus, repo, manager


def cmd_bootstrap(args, cfg, bus, repo, manager):
    spec = load_provisioning_spec(args.file or cfg.PROVISIONING_FILE, cfg)
    created = InterfaceBootstrapper(cfg, repo, bus).bootstrap(RequestContext.system(), spec)
    if created:
        print(f"Provisioned {len(spec.interfaces)} interface(s)")
    else:
        print("Nothing provisioned")


def cmd_add_peer(args, cfg, bus, repo, manager):
    ctx = RequestContext.system()
    iface, peers = repo.get_interface_and_peers(ctx, args.interface)
    peer = new_peer(iface, args.name, display_name=args.display_name or '',
                    user_identifier=args.user or '', existing_peers=peers)
    repo.save_peer(ctx, peer)
    bus.publish(Topic.PEER_INTERFACE_UPDATED, iface.identifier)

    print(f"Peer {peer.identifier} added to {iface.identifier}")
    print(f"  Address: {', '.join(peer.addresses)}")
    print(f"  Public Key: {peer.key_pair.public_key}")


def cmd_export_interface(args, cfg, bus, repo, manager):
    print(manager.get_interface_config(RequestContext.system(), args.interface), end='')


def cmd_export_peer(args, cfg, bus, repo, manager):
    style = ConfigStyle(args.style)
    print(manager.get_peer_config(RequestContext.system(), args.peer, style), end='')


def cmd_link(args, cfg, bus, repo, manager):
    print(manager.get_peer_vpn_link(RequestContext.system(), args.peer))


def cmd_qr(args, cfg, bus, repo, manager):
    png = manager.get_peer_config_qr_code(RequestContext.system(), args.peer)
    output = Path(args.output or f"{args.peer}.png")
    with open(output, 'wb') as f:
        f.write(png)
    print(f"QR code saved to: {output}")


def main(argv=None):
    parser = argparse.ArgumentParser(description='AmneziaWG interface provisioning and config export')
    sub = parser.add_subparsers(dest='command', required=True)

    p = sub.add_parser('bootstrap', help='Create interfaces from the provisioning file')
    p.add_argument('--file', type=str, default=None, help='Provisioning file (default: PROVISIONING_FILE)')
    p.set_defaults(func=cmd_bootstrap)

    p = sub.add_parser('add-peer', help='Add a peer to an interface')
    p.add_argument('interface', help='Interface identifier')
    p.add_argument('name', help='Peer identifier')
    p.add_argument('--display-name', type=str, default=None, help='Peer display name')
    p.add_argument('--user', type=str, default=None, help='Owning user identifier')
    p.set_defaults(func=cmd_add_peer)

    p = sub.add_parser('export-interface', help='Print the interface config')
    p.add_argument('interface', help='Interface identifier')
    p.set_defaults(func=cmd_export_interface)

    p = sub.add_parser('export-peer', help='Print the peer config')
    p.add_argument('peer', help='Peer identifier')
    p.add_argument('--style', choices=[s.value for s in ConfigStyle], default=ConfigStyle.WG_QUICK.value,
                   help='Config style')
    p.set_defaults(func=cmd_export_peer)

    p = sub.add_parser('link', help='Print the vpn:// link of a peer')
    p.add_argument('peer', help='Peer identifier')
    p.set_defaults(func=cmd_link)

    p = sub.add_parser('qr', help='Write the QR code of a peer as PNG')
    p.add_argument('peer', help='Peer identifier')
    p.add_argument('--output', type=str, default=None, help='Output file (default: <peer>.png)')
    p.set_defaults(func=cmd_qr)

    args = parser.parse_args(argv)

    cfg = Config()
    logging.basicConfig(
        level=getattr(logging, cfg.LOG_LEVEL, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        cfg.sanitize()
        cfg.log_startup_values()
        bus, repo, manager = build_services(cfg)
        args.func(args, cfg, bus, repo, manager)
    except (PortalError, OSError) as e:
        logger.error(f"{args.command} failed: {e}")
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
