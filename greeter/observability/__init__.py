"""Observability helpers.

Per-request trace correlation, structlog JSON output (stdout or a rotating
file), and asynchronous forwarding of records to Elasticsearch and to a
monitoring backend.
"""
