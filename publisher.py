# publisher.py
import logging

logger = logging.getLogger(__name__)


class Publisher:
    """
    Pushes a draft to the social platform.

    Implementations return normally on success, raise TransientPublishError
    when a later attempt may succeed (rate limits, 5xx) and
    PermanentPublishError when it cannot (revoked credentials, deleted draft).
    """

    def publish(self, draft_reference):
        raise NotImplementedError


class LoggingPublisher(Publisher):
    """Stand-in used when no platform client is configured"""

    def publish(self, draft_reference):
        logger.info("Publishing draft %s (dry run)", draft_reference)
