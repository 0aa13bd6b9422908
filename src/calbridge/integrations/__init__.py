# Upstream provider integrations (Google OAuth, token persistence).
# Created: 2026-10-06
