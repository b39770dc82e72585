"""
SCRAPI job runner: submits SERP scraping jobs, polls the provider and runs
the staging/rendering workflow over the results.
"""

__version__ = "0.1.0"
