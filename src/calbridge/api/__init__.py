# calbridge HTTP layer.
# Created: 2026-10-08
#
# OAuth endpoints are mounted at the issuer root; everything else lives under /api/v1/.
