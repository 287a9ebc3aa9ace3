"""Calendar and meeting-provider synchronization engine.

Keeps OAuth connections to Gmail/Google Calendar, Calendly, Cal.com and Zoom
fresh, reconciles scheduled bookings into the internal task ledger, and
pushes tasks back out to Google Calendar.
"""

__version__ = "0.1.0"
