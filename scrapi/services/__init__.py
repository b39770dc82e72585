"""
External collaborators: scraping provider, staging datastore, rendering.
"""
