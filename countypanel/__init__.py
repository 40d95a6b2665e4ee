"""
County Finance Panel

Builds a geographically consistent county-year panel of local-government
finance records from two administrative identifier systems, fixed census
geography, and a monthly price index.
"""

__version__ = "1.0.0"
