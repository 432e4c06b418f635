import json
import logging
import socket
from dataclasses import dataclass, field
from typing import List, Optional

import config
from .exceptions import BootstrapDivergenceError
from .security import NodeIdentity


log = logging.getLogger(__name__)


@dataclass
class BootstrapRecord:
    """Contacts and public IP remembered between runs."""
    nodes: List[str] = field(default_factory=list)
    old_ip: Optional[str] = None

    @classmethod
    def load(cls, filename):
        """Returns None when the file is missing or unreadable."""
        try:
            with open(filename, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            log.warning(f"Ignoring unreadable bootstrap file {filename}: {e}")
            return None
        if not isinstance(data, dict):
            log.warning(f"Ignoring malformed bootstrap file {filename}")
            return None
        nodes = [n for n in data.get("nodes") or [] if isinstance(n, str)]
        old_ip = data.get("old_ip")
        return cls(nodes=nodes, old_ip=old_ip if isinstance(old_ip, str) else None)

    def save(self, filename):
        with open(filename, "w", encoding="utf-8") as f:
            json.dump({"nodes": self.nodes, "old_ip": self.old_ip}, f, indent=2)


class BootstrapManager:
    """
    Brings the backend's routing table to a usable state.

    When the overlay recommends a public IP, the identity is re-bound to it
    and bootstrap runs one more time. A second recommendation means the
    public address does not settle and bootstrap fails.
    """
    def __init__(self, backend, identity=None, hostname=None):
        self.backend = backend
        self.hostname = hostname if hostname is not None else socket.gethostname()
        self.identity = identity or NodeIdentity(backend.node_id)
        self.attempts = 0

    async def bootstrap(self, filename=None):
        """
        Returns the contact list in use after bootstrap and the best known
        public IP (None when the overlay never reported one).
        """
        log.info("DHT bootstrap...")
        nodes = list(config.BOOTSTRAP_NODES)
        public_ip = None

        if filename:
            record = BootstrapRecord.load(filename)
            if record is not None and record.nodes:
                nodes = record.nodes
                public_ip = record.old_ip
                log.info(f"Loaded {len(nodes)} bootstrap nodes from {filename}")

        self.attempts = 1
        recommended_ip = await self.backend.bootstrap(self.identity.node_id, public_ip, nodes)
        if self._needs_rebind(recommended_ip, public_ip):
            log.info(f"After bootstrap a new recommended IP was provided: {recommended_ip}")
            self.identity = self.identity.bind(recommended_ip, self.hostname, self.backend.local_addr)
            public_ip = recommended_ip

            self.attempts = 2
            second_ip = await self.backend.bootstrap(self.identity.node_id, public_ip, nodes)
            if second_ip is not None and second_ip != public_ip:
                log.error(f"After the retry another recommended IP was provided: {second_ip}")
                raise BootstrapDivergenceError(
                    f"public IP does not converge: {recommended_ip} then {second_ip}"
                )

        if nodes:
            nodes = self.backend.bootstrap_export()
            log.info(f"Bootstrap nodes: {len(nodes)}")
            if filename:
                try:
                    BootstrapRecord(nodes=nodes, old_ip=public_ip).save(filename)
                except OSError as e:
                    log.warning(f"Could not save bootstrap file {filename}: {e}")

        log.info(f"ID after bootstrap {self.identity.node_id.hex()}")
        if public_ip is not None:
            log.info(f"Public IP after bootstrap {public_ip}")
        return nodes, public_ip

    def _needs_rebind(self, recommended_ip, public_ip):
        """
        A recommendation only calls for a new identity when it names another
        IP, or the same IP our ID is not bound to.
        """
        if recommended_ip is None:
            return False
        return recommended_ip != public_ip or not self.identity.secure_for(recommended_ip)
