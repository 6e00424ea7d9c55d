"""Core decoding components"""
