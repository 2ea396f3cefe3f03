# from a Python REPL or debugger
import renamer

# Run with custom arguments
renamer.run([
    "--config", r".\.influx.plungecaster.toml",
    "--bucket", "plungecaster",
    "--measurement", "control",
    "--tag", "device",
    "--old-name", "PlungeCaster_Heater_ADSClient",
    "--new-name", "CX-68ABF8",
    # Only part of the history
    # "--start", "2025-07-22T15:00:00Z",
    # "--stop", "2025-07-24T08:00:00Z",
    # "--batch-size", "1",  # Write and delete point by point
    # "--max-retries", "3",  # Retry 429/5xx with backoff
    # "--verbose",  # Enable verbose logging
    "--dry-run",  # Log rewrites without writing or deleting
    # "--verify",  # Only count matching points; do not write
])
