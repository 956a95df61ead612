import asyncio
import sys

from server_time_sync.configuration import (
    initialize_config,
    initialize_logging,
    start_prometheus_server,
)
from server_time_sync.clock import ServerClock
from server_time_sync.formatter import TimeFormatter

logger = initialize_logging("./config/logging.yaml")

CITIES = {
    "London": "Europe/London",
    "New York": "America/New_York",
    "Tokyo": "Asia/Tokyo",
    "Sydney": "Australia/Sydney",
}


async def show_city_clocks(config_file, refresh_interval=1, iterations=10):
    """Synchronize once, keep the clock fresh in the background and print a few cities."""
    metrics = initialize_config(config_file)["metrics"]
    if metrics.get("enable_prometheus_server"):
        start_prometheus_server(metrics.get("prometheus_port"))

    async with ServerClock.from_config_file(config_file) as clock:
        server_timestamp = await clock.sync()
        logger.info(
            f"Server timestamp: {server_timestamp} (synced: {clock.is_synced})"
        )
        clock.auto_update()

        formatter = TimeFormatter.from_config_file(config_file, clock)
        for _ in range(iterations):
            for city, tz in CITIES.items():
                print(f"{city:>10}: {formatter.format(tz, 'YYYY-MM-DD hh:mm:ss A')}")
            print()
            await asyncio.sleep(refresh_interval)


if __name__ == "__main__":
    try:
        asyncio.run(show_city_clocks("config/config.toml"))
    except KeyboardInterrupt:
        logger.info("Exiting")
        sys.exit(0)
    except Exception as e:
        logger.error(f"Error: {e}")
