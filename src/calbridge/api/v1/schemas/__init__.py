# Request/response schemas for the HTTP layer.
# Created: 2026-10-08
