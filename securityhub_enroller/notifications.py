"""
SNS transport for run reports and continuation messages.

The engine subscribes to its own topic: continuation messages start the next
invocation, run reports are for external consumers and are ignored by the
engine.
"""

import json
import logging
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError

from .errors import EnrollerError

logger = logging.getLogger(__name__)

CONTINUATION = "continuation"
RUN_REPORT = "run_report"

# SNS rejects messages over 256 KB
MAX_MESSAGE_BYTES = 250_000


def encode_message(message_type: str, body: dict) -> str:
    return json.dumps({"message_type": message_type, **body}, default=str)


def trim_failures(section: dict) -> bool:
    """Halve the failure list of a report or cursor dict. False if nothing is left to drop."""
    failures = section.get("failures") or []
    if not failures:
        return False
    keep = len(failures) // 2
    section["failures_omitted"] = section.get("failures_omitted", 0) + len(failures) - keep
    section["failures"] = failures[:keep]
    return True


def fit_message(message_type: str, body: dict, section: dict) -> str:
    """Encode body, dropping failures from section until it fits in one SNS message."""
    message = encode_message(message_type, body)
    while len(message.encode("utf-8")) > MAX_MESSAGE_BYTES:
        if not trim_failures(section):
            raise EnrollerError(
                f"{message_type} message is {len(message.encode('utf-8'))} bytes, over the SNS limit"
            )
        message = encode_message(message_type, body)
    if section.get("failures_omitted"):
        logger.warning(
            "Dropped %d failure entries to fit the %s message",
            section["failures_omitted"],
            message_type,
        )
    return message


class Notifier:
    def __init__(self, sns_client=None, topic_arn: Optional[str] = None):
        self.sns_client = sns_client
        self.topic_arn = topic_arn

    @property
    def enabled(self) -> bool:
        return bool(self.sns_client and self.topic_arn)

    def _publish(self, message_type: str, subject: str, message: str) -> str:
        response = self.sns_client.publish(
            TopicArn=self.topic_arn,
            Subject=subject,
            Message=message,
            MessageAttributes={
                "message_type": {"DataType": "String", "StringValue": message_type}
            },
        )
        return response["MessageId"]

    def publish_continuation(self, cursor) -> str:
        """Publish the cursor that the next invocation resumes from.

        Raises EnrollerError when there is no topic or SNS rejects the message,
        since without it the run cannot continue.
        """
        if not self.enabled:
            raise EnrollerError("No notification topic configured for continuation")
        data = cursor.to_dict()
        message = fit_message(CONTINUATION, {"cursor": data}, data)
        try:
            message_id = self._publish(CONTINUATION, "Security Hub enrollment continuation", message)
        except (ClientError, BotoCoreError) as e:
            raise EnrollerError(f"Could not publish continuation: {e}") from e
        logger.info(
            "Published continuation %s for run %s (%d accounts done)",
            message_id,
            cursor.run_id,
            len(cursor.processed),
        )
        return message_id

    def publish_report(self, report) -> Optional[str]:
        """Publish a run report; failures are logged, not raised."""
        if not self.enabled:
            return None
        status = "completed" if report.completed else "incomplete"
        if report.error:
            status = "failed"
        data = report.to_dict()
        try:
            message = fit_message(RUN_REPORT, {"report": data}, data)
            return self._publish(RUN_REPORT, f"Security Hub enrollment run {status}", message)
        except (EnrollerError, ClientError, BotoCoreError) as e:
            logger.error("Could not publish run report: %s", e)
            return None


def parse_message(message: str) -> dict:
    """Decode an SNS message body published by Notifier; {} if it is not ours."""
    try:
        body = json.loads(message)
    except (TypeError, ValueError):
        return {}
    if not isinstance(body, dict) or "message_type" not in body:
        return {}
    return body
