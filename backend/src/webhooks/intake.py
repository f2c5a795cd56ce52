"""Webhook intake - the entry point handed raw deliveries by the controller layer.

handle_webhook() returns quickly and never raises: the provider always gets
a success response once the delivery is queued, so verification details
never leak back to it.
"""

import logging
from typing import Callable, Optional, Union

from integrations.domain import ProviderType, utcnow
from observability.metrics import webhooks_total
from .normalizer import WebhookEvent, WebhookNormalizer

logger = logging.getLogger(__name__)


class WebhookIntake:
    """Queue deliveries for the normalizer, or run it inline without a queue."""

    def __init__(
        self,
        normalizer: WebhookNormalizer,
        enqueue: Optional[Callable[[dict], None]] = None,
        clock: Callable = utcnow,
    ):
        self._normalizer = normalizer
        self._enqueue = enqueue
        self._clock = clock

    def handle_webhook(
        self,
        provider_type: str,
        raw_payload: Union[bytes, str],
        signature_header: Optional[str],
    ) -> None:
        try:
            provider = ProviderType(provider_type)
        except ValueError:
            logger.warning(f"Webhook for unknown provider '{provider_type}' dropped")
            webhooks_total.labels(provider="unknown", outcome="malformed").inc()
            return

        if isinstance(raw_payload, str):
            raw_payload = raw_payload.encode("utf-8")
        event = WebhookEvent(
            provider_type=provider,
            raw_payload=raw_payload,
            signature=signature_header,
            received_at=self._clock(),
        )

        if self._enqueue is not None:
            try:
                self._enqueue(event.to_message())
                return
            except Exception as e:
                logger.error(
                    f"Could not queue webhook, processing inline: {e}",
                    extra={"provider_type": provider.value},
                )

        try:
            self._normalizer.process(event)
        except Exception as e:
            logger.error(
                f"Webhook processing failed: {e}",
                extra={"provider_type": provider.value, "connection_id": event.connection_id},
                exc_info=True,
            )
