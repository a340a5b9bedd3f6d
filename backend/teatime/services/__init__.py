"""Teatime Authority - Services"""
