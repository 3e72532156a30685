"""
review-harvester: drives paginated review extraction jobs in a browser and
hands the collected reviews to an ingestion endpoint.
"""

__version__ = "0.1.0"
