# calbridge: OAuth broker for the calendar tool.
# Created: 2026-10-06
#
# Downstream clients authorize against calbridge; calbridge holds the Google
# tokens and issues its own opaque, prefixed tokens in their place.

__version__ = "0.1.0"
