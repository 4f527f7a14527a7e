"""
Switch control and status for the monitored plug.

Tuya is inconsistent about reporting command success, so a command counts
as accepted unless the response is empty or carries ``success: false``.
"""

import logging

from exceptions import ControlError, StatusUnavailable, SwitchCodeNotFound, UpstreamRequestError
from tuya_client import TuyaClient

logger = logging.getLogger(__name__)

SWITCH_CODE = "switch_1"


async def set_switch(client: TuyaClient, on: bool) -> dict:
    """Turn the plug on or off."""
    try:
        data = await client.send_commands([{"code": SWITCH_CODE, "value": on}])
    except UpstreamRequestError as e:
        raise ControlError("Failed to send switch command", details=str(e)) from e

    if not data:
        raise ControlError("Empty response from Tuya")
    if isinstance(data, dict) and data.get("success") is False:
        details = f"code {data['code']}" if "code" in data else None
        raise ControlError(data.get("msg") or "Tuya rejected the switch command", details=details)

    logger.info(f"Switch turned {'on' if on else 'off'}")
    return {"state": on}


async def get_switch_state(client: TuyaClient) -> bool:
    """Return the current switch_1 state from the live device status."""
    status = await client.fetch_device_status()
    if not isinstance(status, list):
        raise StatusUnavailable("Device status missing from Tuya response")

    for item in status:
        if isinstance(item, dict) and item.get("code") == SWITCH_CODE:
            return bool(item.get("value"))
    raise SwitchCodeNotFound(f"{SWITCH_CODE} not present in device status")
