"""
App Explorer core package
"""
