# Routes package init
"""
Exposure Backend — API Routes Package
=======================================

What:  HTTP route handlers that accept requests and return responses.
How:   Each route module handles a specific resource or audience.

Route Inventory:
    - health.py:  GET  /health
    - places.py:  public gallery reads (/api/places..., /api/files/...)
    - admin.py:   session login/logout, place and photo mutations, TOTP

Design Principle:
    Routes are THIN. They extract data from the request, call a service
    obtained through Depends (see app/dependencies.py) and shape the
    response. Business rules live in services.
"""
