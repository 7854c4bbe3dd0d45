"""
API Schemas
Request and response models
"""
