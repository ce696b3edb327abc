"""
Map engine core.

Record sources (fetchers), progressive loading, and the render scheduler that
turns viewport changes into clustered features.
"""
