"""
Domain logic for buildings, apartments, visits and drafts.

This package contains the repositories, aggregation rules and the edit
buffer, independent of the transport used to reach the store.
"""
