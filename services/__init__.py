"""
Services Package

Background services built on top of the core:
- scheduler: TaskScheduler running named tasks at randomized intervals
"""
