"""
Spatial audio render pipe.
"""
