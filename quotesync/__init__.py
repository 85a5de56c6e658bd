"""
Market-data file synchronisation services.

The package holds both halves of the system: the publisher, which
repackages per-symbol source trees into time-bucketed archives and serves
them over HTTP, and the client, which mirrors those archives into a local
append-only CSV layout. Shared pieces (configuration, the archive codec,
the manifest format and the trading calendar) live at the top level so
both halves import them the same way.
"""
