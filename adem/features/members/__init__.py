"""
Member administration: role assignment, moderation and the member directory.
"""
