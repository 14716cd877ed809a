"""
Difusión en tiempo real del estado de las colas (fan-out por clínica).

- Un `ClinicChannel` por clínica, creado al primer publish/subscribe y
  conservado durante toda la vida del proceso.
- Cada suscriptor tiene un buffer acotado; si se llena se descarta el
  mensaje más antiguo, de modo que publicar nunca bloquea al productor.
- Sin durabilidad: un suscriptor nuevo solo recibe lo publicado después
  de suscribirse y debe consultar el estado actual por separado.
- El stream intercala un heartbeat periódico para mantener viva la
  conexión a través de proxies.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass

from clinic_queue.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)

HEARTBEAT_EVENT = "heartbeat"
QUEUE_EVENT = "queue-event"


@dataclass(frozen=True)
class StreamMessage:
    """Un frame del stream: tipo de evento + payload textual."""
    event: str
    data: str


class Subscription:
    """Suscripción viva a la cola de una clínica."""

    def __init__(self, channel: "ClinicChannel", buffer_size: int):
        self.channel = channel
        self.queue: asyncio.Queue[str] = asyncio.Queue(maxsize=buffer_size)
        self.dropped = 0
        self.closed = False

    def offer(self, payload: str) -> None:
        """Encola sin bloquear; si el buffer está lleno descarta el más antiguo."""
        if self.closed:
            return
        try:
            self.queue.put_nowait(payload)
        except asyncio.QueueFull:
            try:
                self.queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
            self.dropped += 1
            self.queue.put_nowait(payload)

    async def stream(
        self, heartbeat_seconds: float | None = None
    ) -> AsyncIterator[StreamMessage]:
        """
        Entrega los eventos en orden de publicación, intercalando un
        heartbeat cada `heartbeat_seconds` independientemente del tráfico.
        Al cerrarse (o cancelarse) el generador se libera la suscripción.
        """
        interval = heartbeat_seconds or settings.QUEUE_HEARTBEAT_SECONDS
        loop = asyncio.get_running_loop()
        next_beat = loop.time() + interval
        try:
            while not self.closed:
                timeout = max(next_beat - loop.time(), 0)
                try:
                    payload = await asyncio.wait_for(self.queue.get(), timeout=timeout)
                except asyncio.TimeoutError:
                    next_beat += interval
                    yield StreamMessage(HEARTBEAT_EVENT, "💓")
                    continue
                yield StreamMessage(QUEUE_EVENT, payload)
        finally:
            self.close()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.channel.unsubscribe(self)


class ClinicChannel:
    """Canal de difusión de una clínica."""

    def __init__(self, clinic_id: str, buffer_size: int):
        self.clinic_id = clinic_id
        self.buffer_size = buffer_size
        self._subscribers: set[Subscription] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscription:
        subscription = Subscription(self, self.buffer_size)
        self._subscribers.add(subscription)
        logger.debug(
            f"Suscriptor agregado a {self.clinic_id} (total={self.subscriber_count})"
        )
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        self._subscribers.discard(subscription)
        # Liberar el buffer del suscriptor desconectado
        while not subscription.queue.empty():
            subscription.queue.get_nowait()

    def publish(self, payload: str) -> int:
        """Entrega el payload a todos los suscriptores actuales; retorna cuántos."""
        subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription.offer(payload)
        return len(subscribers)


class ClinicBroadcaster:
    """Arena de canales por clínica, direccionados por clinic_id."""

    def __init__(self, buffer_size: int | None = None):
        self.buffer_size = buffer_size or settings.QUEUE_SUBSCRIBER_BUFFER
        self._channels: dict[str, ClinicChannel] = {}

    def channel(self, clinic_id: str) -> ClinicChannel:
        channel = self._channels.get(clinic_id)
        if channel is None:
            channel = ClinicChannel(clinic_id, self.buffer_size)
            self._channels[clinic_id] = channel
        return channel

    def publish(self, clinic_id: str, payload: str) -> int:
        return self.channel(clinic_id).publish(payload)

    def subscribe(self, clinic_id: str) -> Subscription:
        return self.channel(clinic_id).subscribe()

    def clinic_ids(self) -> list[str]:
        return sorted(self._channels)


def format_sse(message: StreamMessage) -> str:
    """Serializa un frame en formato Server-Sent Events."""
    lines = [f"event: {message.event}"]
    lines.extend(f"data: {line}" for line in message.data.splitlines() or [""])
    return "\n".join(lines) + "\n\n"
