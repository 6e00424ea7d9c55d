"""Native program decoders and message helpers"""
