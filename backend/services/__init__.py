"""
Services package - Business logic layer.

This package contains all business logic services that operate on Django models
but are decoupled from the HTTP/WebSocket layer.

Modules:
    - pricing: Fare estimation
    - routing: Route, geocode and address search providers
    - ride_management: Ride lifecycle operations
    - dispatch: Request orchestration
"""
