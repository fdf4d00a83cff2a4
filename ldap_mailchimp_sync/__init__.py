"""
LDAP Mailchimp Sync - Copy the members of an LDAP group into a Mailchimp audience.

This package reads user accounts from an LDAP directory group and upserts them
as subscribers of a Mailchimp list, keyed by email address.
"""

__version__ = "1.0.0"
__author__ = "LDAP Sync Team"
