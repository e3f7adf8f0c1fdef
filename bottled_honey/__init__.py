"""
bottled_honey - a Terraria honeypot.

Listens for Terraria connection requests, occasionally asks for a password,
scrapes some basic data from the client and reports every connection to an
OpenTelemetry endpoint.
"""

__version__ = "0.1.0"
