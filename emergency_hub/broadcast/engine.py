"""
Emergency Hub - Broadcast Engine

Builds envelopes and drives fan-out through the connection registry.

Delivery is at-most-once and best-effort: a send counts as a success
once the transport accepts the write. A failed send removes that client
(treated as a disconnect) and never aborts the rest of the fan-out.

Ordering within one call: envelope construction, then the replay-buffer
push (broadcast-to-all only), then the sends.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .envelope import (
    BroadcastEnvelope,
    ErrorPayload,
    MessageType,
    Payload,
)
from .registry import ClientConnection, ConnectionRegistry, TargetCriteria
from .replay_buffer import ReplayBuffer

logger = logging.getLogger(__name__)

PayloadLike = Union[Payload, Dict[str, Any], None]

# Called with (client_id, reason) after a failed send removes a client
DropCallback = Callable[[str, str], None]


@dataclass(frozen=True)
class DeliveryReport:
    """Outcome of one fan-out.

    ``pending`` counts recipients whose send had not finished when the
    caller stopped waiting; those sends still complete on the hub loop.
    """
    success_count: int = 0
    failure_count: int = 0
    pending: int = 0

    @property
    def attempted(self) -> int:
        return self.success_count + self.failure_count + self.pending

    def to_dict(self) -> Dict[str, int]:
        return {
            "successCount": self.success_count,
            "failureCount": self.failure_count,
            "pendingCount": self.pending,
        }


Recipients = List[ClientConnection]


class BroadcastEngine:
    """Composes envelopes and delivers them to registry entries.

    Preparing a send (envelope, replay push, recipient snapshot) is
    thread-safe and may run on the caller's thread; ``deliver`` must run
    on the hub loop.

    Args:
        registry: Live connections to deliver to.
        replay_buffer: History that broadcast-to-all envelopes are pushed to.
        on_drop: Optional callback fired when a failed send removes a client.
    """

    def __init__(self, registry: ConnectionRegistry,
                 replay_buffer: ReplayBuffer,
                 on_drop: Optional[DropCallback] = None) -> None:
        self._registry = registry
        self._replay = replay_buffer
        self._on_drop = on_drop
        self._messages_sent = 0
        self._send_failures = 0

    def prepare_all(self, message_type: MessageType,
                    payload: PayloadLike) -> Tuple[BroadcastEnvelope, Recipients]:
        """Build the envelope, record it for replay, snapshot every client."""
        envelope = BroadcastEnvelope.build(message_type, payload)
        self._replay.push(envelope)
        return envelope, self._registry.all()

    def prepare_targeted(self, message_type: MessageType, payload: PayloadLike,
                         criteria: TargetCriteria) -> Tuple[BroadcastEnvelope, Recipients]:
        """Build the envelope and snapshot matching clients. No replay push."""
        envelope = BroadcastEnvelope.build(
            message_type, payload, target_criteria=criteria.to_dict())
        return envelope, self._registry.matching(criteria)

    async def broadcast_all(self, message_type: MessageType,
                            payload: PayloadLike) -> DeliveryReport:
        envelope, recipients = self.prepare_all(message_type, payload)
        return await self.deliver(envelope, recipients)

    async def broadcast_targeted(self, message_type: MessageType,
                                 payload: PayloadLike,
                                 criteria: TargetCriteria) -> int:
        """Deliver to clients matching ``criteria``; returns matched count."""
        envelope, recipients = self.prepare_targeted(message_type, payload, criteria)
        await self.deliver(envelope, recipients)
        return len(recipients)

    async def send_to_client(self, client_id: str,
                             envelope: BroadcastEnvelope) -> bool:
        client = self._registry.get(client_id)
        if client is None:
            return False
        return await self._deliver(client, envelope.to_json())

    async def send_error(self, client_id: str, message: str) -> bool:
        envelope = BroadcastEnvelope.build(
            MessageType.ERROR, ErrorPayload(message=message))
        return await self.send_to_client(client_id, envelope)

    async def deliver(self, envelope: BroadcastEnvelope,
                      recipients: Recipients) -> DeliveryReport:
        """Send one envelope to a recipient snapshot concurrently."""
        if not recipients:
            return DeliveryReport()
        text = envelope.to_json()
        results = await asyncio.gather(
            *(self._deliver(client, text) for client in recipients)
        )
        sent = sum(1 for ok in results if ok)
        report = DeliveryReport(success_count=sent,
                                failure_count=len(results) - sent)
        logger.info("%s %s: %d sent, %d failed",
                    "Targeted" if envelope.target_criteria is not None else "Broadcast",
                    envelope.type.value, report.success_count, report.failure_count)
        return report

    async def _deliver(self, client: ClientConnection, text: str) -> bool:
        """Write one frame; on failure drop the client from the registry."""
        transport = client.transport
        if not transport.is_open:
            self._drop(client.client_id, "connection closed")
            return False
        try:
            await transport.send(text)
        except Exception as e:
            self._drop(client.client_id, str(e) or type(e).__name__)
            return False
        self._messages_sent += 1
        return True

    def _drop(self, client_id: str, reason: str) -> None:
        self._send_failures += 1
        if self._registry.remove(client_id) is not None:
            logger.warning("Dropped client %s after failed send: %s",
                           client_id, reason)
            if self._on_drop is not None:
                self._on_drop(client_id, reason)

    @property
    def stats(self) -> Dict[str, int]:
        return {
            "total_messages_sent": self._messages_sent,
            "total_send_failures": self._send_failures,
        }
