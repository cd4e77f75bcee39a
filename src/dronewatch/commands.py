"""Command routing shared by the fan-out hub and the pull surface."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from dronewatch.errors import AgentNotFoundError, AgentOfflineError
from dronewatch.ingest.normalize import topic_for

if TYPE_CHECKING:
    from dronewatch.ingest.transport import Transport
    from dronewatch.store.agents import AgentRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Outcome of handing a command to the ingestion transport."""

    success: bool
    agent_id: str
    command: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "droneId": self.agent_id,
            "command": self.command,
            "message": self.message,
        }


class CommandRouter:
    """Publishes commands to ``{prefix}/{id}/commands`` for online agents only."""

    def __init__(
        self,
        registry: AgentRegistry,
        transport: Transport,
        *,
        topic_prefix: str = "agents",
    ) -> None:
        self._registry = registry
        self._transport = transport
        self._prefix = topic_prefix
        self._sent = 0
        self._rejected = 0

    @property
    def sent_count(self) -> int:
        return self._sent

    @property
    def rejected_count(self) -> int:
        return self._rejected

    def send(
        self,
        agent_id: str,
        command: str,
        parameters: dict[str, Any] | None = None,
    ) -> CommandResult:
        """Forward *command* to *agent_id*.

        Raises :class:`AgentNotFoundError` for an unknown agent and
        :class:`AgentOfflineError` when its online flag is false; nothing is
        published in either case. A transport refusal is reported as an
        unsuccessful :class:`CommandResult`.
        """
        if agent_id not in self._registry:
            self._rejected += 1
            raise AgentNotFoundError(agent_id)
        if not self._registry.is_online(agent_id):
            self._rejected += 1
            logger.info("Command %s to %s rejected: agent offline", command, agent_id)
            raise AgentOfflineError(agent_id)

        payload = {
            "command": command,
            "parameters": parameters or {},
            "timestamp": datetime.now(UTC).isoformat(),
        }
        if not self._transport.publish(topic_for(self._prefix, agent_id, "commands"), payload):
            return CommandResult(
                success=False,
                agent_id=agent_id,
                command=command,
                message="Failed to send command",
            )
        self._sent += 1
        logger.info("Command %s sent to %s", command, agent_id)
        return CommandResult(
            success=True,
            agent_id=agent_id,
            command=command,
            message=f"Command {command} sent to agent {agent_id}",
        )
