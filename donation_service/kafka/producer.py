import json
from datetime import datetime, timezone
from typing import Optional
import structlog
from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaError

from donation_service.core.config import get_settings
from donation_service.models.donation import Donation
from donation_service.schemas.events import DonationCompletedEvent

logger = structlog.get_logger(__name__)
settings = get_settings()


class KafkaProducer:
    """Kafka producer for publishing donation lifecycle events"""

    def __init__(self):
        self.producer: Optional[AIOKafkaProducer] = None
        self.bootstrap_servers = settings.kafka_bootstrap_servers

    async def start(self):
        """Initialize and start Kafka producer"""
        try:
            self.producer = AIOKafkaProducer(
                bootstrap_servers=self.bootstrap_servers,
                value_serializer=lambda v: json.dumps(v).encode('utf-8'),
                compression_type='gzip',
                acks='all',  # Wait for all in-sync replicas
                retry_backoff_ms=500,
                request_timeout_ms=30000,
            )
            await self.producer.start()
            logger.info("Kafka producer started", bootstrap_servers=self.bootstrap_servers)
        except KafkaError as e:
            self.producer = None
            logger.error("Failed to start Kafka producer", error=str(e))
            raise

    async def stop(self):
        """Stop Kafka producer gracefully"""
        if self.producer:
            try:
                await self.producer.stop()
                logger.info("Kafka producer stopped")
            except Exception as e:
                logger.error("Error stopping Kafka producer", error=str(e))
            finally:
                self.producer = None

    async def publish_donation_completed(self, donation: Donation) -> bool:
        """
        Publish donation_completed event so the notification side can alert admins

        Publication is best effort: the donation is already committed.

        Returns:
            True when the event was acknowledged by Kafka
        """
        if not self.producer:
            logger.debug("Kafka producer not running, skipping event", payment_reference=donation.payment_reference)
            return False

        event = DonationCompletedEvent(
            donation_id=donation.id,
            payment_reference=donation.payment_reference,
            receipt_number=donation.receipt_number,
            amount=donation.amount / 100,
            currency=donation.currency,
            project_id=donation.project_id,
            donor_name=None if donation.is_anonymous else donation.donor_name,
            environment=donation.environment,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

        try:
            await self.producer.send_and_wait(
                settings.kafka_topic_donation_completed,
                value=event.model_dump()
            )
            logger.info(
                "Published donation_completed event",
                donation_id=event.donation_id,
                topic=settings.kafka_topic_donation_completed
            )
            return True
        except KafkaError as e:
            logger.error(
                "Failed to publish donation_completed event",
                donation_id=event.donation_id,
                error=str(e)
            )
        except Exception as e:
            logger.error(
                "Unexpected error publishing to Kafka",
                donation_id=event.donation_id,
                error=str(e)
            )
        return False


# Global producer instance
kafka_producer = KafkaProducer()


def get_kafka_producer() -> KafkaProducer:
    """Get Kafka producer instance"""
    return kafka_producer
