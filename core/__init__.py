"""
Shared plumbing for the referral rewards engine: settings, logging,
error taxonomy, storage and period helpers.
"""
