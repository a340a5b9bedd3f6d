"""Teatime Authority - tea-time compliance backend"""
