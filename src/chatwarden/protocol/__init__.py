"""
Protocol Socket contract, message model and the in-memory loopback driver.
"""
