"""Kernel services.  Each receives a Session and flushes; callers commit."""
