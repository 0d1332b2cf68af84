"""
ClerkSim case lifecycle orchestration and resilient AI interaction layer
"""
__version__ = "1.0.0"
