import os

# Keep test runs from installing tracer providers and instrumentors
os.environ.setdefault("DISABLE_TELEMETRY", "true")
