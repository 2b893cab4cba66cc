"""
Interfaces of the services the core talks to.

storage.py, templates.py, events.py and qr.py hold the default
implementations; any object with the same methods can be passed instead.
"""

from typing import List, Protocol, Tuple

from domain import ConfigStyle, Interface, Peer, RequestContext


class WireguardRepository(Protocol):
    def get_interface_and_peers(self, ctx: RequestContext, identifier: str) -> Tuple[Interface, List[Peer]]:
        """Return the interface and all peers attached to it"""

    def get_peer(self, ctx: RequestContext, identifier: str) -> Peer:
        ...

    def get_interface(self, ctx: RequestContext, identifier: str) -> Interface:
        ...

    def list_interfaces(self, ctx: RequestContext) -> List[Interface]:
        ...

    def save_interface(self, ctx: RequestContext, iface: Interface) -> None:
        """Create or replace the interface"""

    def save_peer(self, ctx: RequestContext, peer: Peer) -> None:
        ...


class FileSystemRepository(Protocol):
    def write_file(self, path: str, contents: str) -> None:
        ...

    def delete_file(self, path: str) -> None:
        ...


class TemplateRenderer(Protocol):
    def render_interface_config(self, iface: Interface, peers: List[Peer]) -> str:
        ...

    def render_peer_config(self, peer: Peer, style: ConfigStyle, iface: Interface) -> str:
        ...


class QrImageEncoder(Protocol):
    def encode(self, payload: str) -> bytes:
        """Return a PNG image of the payload"""
