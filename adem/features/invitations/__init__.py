"""
Whitelist of pre-approved emails and whitelist-gated signup.
"""
