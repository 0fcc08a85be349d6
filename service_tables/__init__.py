"""
Table access service for the Table Access Layer.
"""
