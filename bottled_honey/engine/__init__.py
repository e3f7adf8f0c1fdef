"""
Protocol emulation engine: framing, password gate, handshake state machine,
fingerprint capture and the connection listener.
"""
