"""
Record pipeline: raw payload transformation and week windows.
"""
