# Middleware package init
"""
Exposure Backend — Middleware Package
=======================================

What:  Cross-cutting concerns applied to every request.

Middleware Chain (order matters!):
    Request → [Rate Limit] → [Request ID] → [Logging] → [Session] → [CORS] → Route Handler

    1. Rate Limit FIRST: Reject abusive requests before any processing
    2. Request ID: Generate correlation ID for logging and tracing
    3. Logging: Log request details with the generated request ID
    4. Session: Starlette's signed-cookie session carries the admin login
"""
