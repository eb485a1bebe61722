"""Power source detection for the adaptive polling policy."""

import psutil
import structlog

log = structlog.get_logger()


def on_battery() -> bool:
    """True if the machine is running on battery power.

    Desktops without a battery, and platforms where psutil cannot read the
    battery, report False.
    """
    try:
        battery = psutil.sensors_battery()
    except (AttributeError, NotImplementedError, OSError) as e:
        log.debug("battery_probe_failed", error=str(e))
        return False
    if battery is None:
        return False
    # power_plugged is None when the OS cannot tell
    return battery.power_plugged is False
