"""Leader-elected Dgraph export service.

One replica among many holds a lease and triggers the Dgraph `export`
admin mutation on a fixed period. Any replica accepts on-demand exports
over HTTP. Temporary export directories can be swept after each run.
"""

__version__ = "1.0.0"
