import os
import json
import logging
import threading
from pathlib import Path
from typing import Dict, List, Tuple

from domain import (
    Interface, Peer, RequestContext,
    interface_from_dict, interface_to_dict, peer_from_dict, peer_to_dict,
)
from errors import NotFoundError

logger = logging.getLogger(__name__)


class JsonWireguardRepository:
    """Keeps interfaces and peers in a single JSON file"""

    def __init__(self, path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _load(self) -> Dict:
        """Load the store from disk"""
        if self.path.exists():
            with open(self.path, 'r') as f:
                return json.load(f)
        return {'interfaces': {}, 'peers': {}}

    def _save(self, data: Dict):
        """Write the store back to disk"""
        tmp = self.path.with_suffix(self.path.suffix + '.tmp')
        with open(tmp, 'w') as f:
            json.dump(data, f, indent=2)
        os.replace(tmp, self.path)

    def get_interface(self, ctx: RequestContext, identifier: str) -> Interface:
        ctx.raise_if_cancelled()
        raw = self._load()['interfaces'].get(identifier)
        if raw is None:
            raise NotFoundError(f"interface {identifier} not found")
        return interface_from_dict(raw)

    def get_interface_and_peers(self, ctx: RequestContext, identifier: str) -> Tuple[Interface, List[Peer]]:
        ctx.raise_if_cancelled()
        data = self._load()
        raw = data['interfaces'].get(identifier)
        if raw is None:
            raise NotFoundError(f"interface {identifier} not found")
        peers = [
            peer_from_dict(p) for p in data['peers'].values()
            if p['interface_identifier'] == identifier
        ]
        return interface_from_dict(raw), peers

    def list_interfaces(self, ctx: RequestContext) -> List[Interface]:
        ctx.raise_if_cancelled()
        return [interface_from_dict(raw) for raw in self._load()['interfaces'].values()]

    def get_peer(self, ctx: RequestContext, identifier: str) -> Peer:
        ctx.raise_if_cancelled()
        raw = self._load()['peers'].get(identifier)
        if raw is None:
            raise NotFoundError(f"peer {identifier} not found")
        return peer_from_dict(raw)

    def save_interface(self, ctx: RequestContext, iface: Interface) -> None:
        ctx.raise_if_cancelled()
        with self._lock:
            data = self._load()
            data['interfaces'][iface.identifier] = interface_to_dict(iface)
            self._save(data)

    def save_peer(self, ctx: RequestContext, peer: Peer) -> None:
        ctx.raise_if_cancelled()
        with self._lock:
            data = self._load()
            if peer.interface_identifier not in data['interfaces']:
                raise NotFoundError(f"interface {peer.interface_identifier} not found")
            data['peers'][peer.identifier] = peer_to_dict(peer)
            self._save(data)

    def delete_interface(self, ctx: RequestContext, identifier: str) -> None:
        """Remove the interface together with all of its peers"""
        ctx.raise_if_cancelled()
        with self._lock:
            data = self._load()
            if data['interfaces'].pop(identifier, None) is None:
                raise NotFoundError(f"interface {identifier} not found")
            data['peers'] = {
                pid: p for pid, p in data['peers'].items()
                if p['interface_identifier'] != identifier
            }
            self._save(data)


class LocalFileSystemRepository:
    """Writes exported config files below a base directory"""

    def __init__(self, base_path, mode: int = 0o600):
        self.base_path = Path(base_path)
        self.mode = mode

    def _resolve(self, path: str) -> Path:
        target = (self.base_path / path).resolve()
        if self.base_path.resolve() not in target.parents:
            raise ValueError(f"path {path} escapes {self.base_path}")
        return target

    def write_file(self, path: str, contents: str) -> None:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, 'w', encoding='utf-8') as f:
            f.write(contents)
        os.chmod(target, self.mode)
        logger.debug(f"Wrote {target}")

    def delete_file(self, path: str) -> None:
        target = self._resolve(path)
        try:
            target.unlink()
        except FileNotFoundError:
            logger.debug(f"{target} already removed")
