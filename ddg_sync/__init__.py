"""
DDG Sync - Reconcile department dynamic distribution groups with directory department attributes.

Department values such as ``"10023 Accounts Payable - USA"`` are parsed into a
group name (``10023USA``), display name and recipient filter, and the matching
dynamic distribution group is created or updated in the directory.
"""

__version__ = "1.0.0"
__author__ = "DDG Sync Team"
