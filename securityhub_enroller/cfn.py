"""
CloudFormation custom resource responses for the bootstrap trigger.
"""

import json
import logging

import urllib3

logger = logging.getLogger(__name__)

SUCCESS = "SUCCESS"
FAILED = "FAILED"

http = urllib3.PoolManager()


def send(event: dict, context, status: str, data: dict = None, reason: str = "", physical_resource_id: str = None) -> int:
    """PUT the custom resource result to the pre-signed ResponseURL.

    Returns the HTTP status code, or 0 if the request could not be sent.
    """
    log_stream = getattr(context, "log_stream_name", "securityhub-enroller")
    body = json.dumps(
        {
            "Status": status,
            "Reason": reason or f"See CloudWatch Logs stream {log_stream}",
            "PhysicalResourceId": physical_resource_id
            or event.get("PhysicalResourceId")
            or log_stream,
            "StackId": event["StackId"],
            "RequestId": event["RequestId"],
            "LogicalResourceId": event["LogicalResourceId"],
            "NoEcho": False,
            "Data": data or {},
        },
        default=str,
    )
    # Response bodies are capped at 4 KB
    if len(body) > 4096:
        logger.warning("Custom resource response too large; dropping Data")
        return send(event, context, status, {}, reason[:1000], physical_resource_id)

    try:
        response = http.request(
            "PUT",
            event["ResponseURL"],
            headers={"content-type": "", "content-length": str(len(body))},
            body=body,
        )
        logger.info("CloudFormation response %s: HTTP %s", status, response.status)
        return response.status
    except urllib3.exceptions.HTTPError as e:
        logger.error("Could not send CloudFormation response: %s", e)
        return 0
