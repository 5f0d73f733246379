"""
Keystone - Property-Based Testing Suite

Property-based testing using Hypothesis to check dependency resolution
invariants over generated service graphs.
"""
