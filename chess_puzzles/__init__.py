"""UCI engine driver and rated chess puzzle pipeline."""
