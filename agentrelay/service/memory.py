from __future__ import annotations

import copy
from typing import Any, Dict, List, Mapping, Optional

from agentrelay.logging import get_logger
from agentrelay.service.errors import MemoryAccessError
from agentrelay.service.workflow_config import GLOBAL_NAMESPACE, WorkflowConfig

logger = get_logger(__name__)


class MemoryContext:
    """Namespaced key/value memory shared between the agents of one run.

    Every agent sees the ``global`` namespace plus the namespaces listed in
    its ``readFrom``; it writes only to its own ``writeTo`` namespace. Keys are
    merged in (existing keys overwritten), never removed mid-run.
    """

    def __init__(self, config: WorkflowConfig) -> None:
        self.config = config
        self._namespaces: Dict[str, Dict[str, Any]] = {}

    def seed(
        self,
        global_seed: Optional[Mapping[str, Any]] = None,
        runtime_memory: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """Populate memory at run start.

        Pre-seeded namespaces come from the workflow document; runtime memory
        is merged into ``global`` and wins on conflicting keys.
        """
        for namespace, values in self.config.memory.items():
            if namespace != GLOBAL_NAMESPACE:
                self._namespaces[namespace] = copy.deepcopy(dict(values))
        merged = self._namespaces.setdefault(GLOBAL_NAMESPACE, {})
        if global_seed:
            merged.update(copy.deepcopy(dict(global_seed)))
        if runtime_memory:
            merged.update(copy.deepcopy(dict(runtime_memory)))

    @property
    def namespaces(self) -> List[str]:
        return list(self._namespaces)

    def readable_namespaces(self, agent_name: str) -> List[str]:
        granted = [GLOBAL_NAMESPACE]
        for namespace in self.config.agent(agent_name).policy.memory.read_from:
            if namespace not in granted:
                granted.append(namespace)
        return granted

    def read(self, agent_name: str) -> Dict[str, Any]:
        """Merged view of the namespaces the agent may read.

        Later namespaces in ``readFrom`` win on verbatim key collisions. The
        view is a copy; mutating it does not touch shared memory.
        """
        view: Dict[str, Any] = {}
        for namespace in self.readable_namespaces(agent_name):
            view.update(self._namespaces.get(namespace, {}))
        return copy.deepcopy(view)

    def write(self, agent_name: str, payload: Optional[Mapping[str, Any]]) -> Optional[str]:
        """Merge ``payload`` into the agent's ``writeTo`` namespace.

        Returns the namespace written, or None when the agent has no
        ``writeTo`` grant or nothing to write.
        """
        namespace = self.config.agent(agent_name).policy.memory.write_to
        if not namespace or not payload:
            return None
        target = self._namespaces.setdefault(namespace, {})
        target.update(copy.deepcopy(dict(payload)))
        logger.debug(
            "memory_write", agent=agent_name, namespace=namespace, keys=sorted(payload)
        )
        return namespace

    def check_write(self, agent_name: str, namespace: Optional[str]) -> str:
        """Resolve the namespace an agent may write, rejecting foreign ones."""
        owned = self.config.agent(agent_name).policy.memory.write_to
        if not owned:
            raise MemoryAccessError(f"agent '{agent_name}' has no writeTo namespace")
        if namespace is not None and namespace != owned:
            raise MemoryAccessError(
                f"agent '{agent_name}' may only write namespace '{owned}', not '{namespace}'"
            )
        return owned

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return copy.deepcopy(self._namespaces)
