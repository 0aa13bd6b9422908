# Security helpers: audit log and request rate limiting.
# Created: 2026-10-08
