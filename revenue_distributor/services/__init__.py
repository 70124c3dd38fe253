"""
Services for the revenue pipeline.
"""
