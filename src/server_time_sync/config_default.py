config_defaults = {
    "server_time": {
        "sync": {
            "endpoint": None,
            "method": "POST",
            "attempts": 3,
            "interval_ms": 100,
            "timeout_ms": 5000,
            "auto_update_interval_ms": 300000,
        },
        "fetch": {
            "auth_token_env": "SERVER_TIME_API_TOKEN",
        },
        "format": {
            "default_format": "YYYY-MM-DD HH:mm:ss",
            "default_timezone": None,
        },
        "metrics": {
            "enable_prometheus_server": False,
            "prometheus_port": 8000,
        },
    },
}
