"""
Job tracker attachment storage service.
"""
