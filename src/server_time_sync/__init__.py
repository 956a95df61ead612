__version__ = "1.0.0"

from server_time_sync.clock import (
    AutoUpdateHandle,
    ClockError,
    ProbeResult,
    ServerClock,
    normalize_timestamp,
)
from server_time_sync.formatter import (
    FormatOptions,
    TimeFormatter,
    format_date,
    is_valid_timezone,
)
from server_time_sync.configuration import (
    initialize_config,
    initialize_logging,
    FetchConfig,
    FormatConfig,
    SyncConfig,
)
