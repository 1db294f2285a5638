def scramble(data: bytes) -> bytes:
    """
    Rolling XOR cipher applied to binary table payloads.

    Runs from the last byte backwards. The key starts at the payload length
    and each next key mixes the position with 0x55, 0xAA and a x11 multiplier.
    The key stream does not depend on the data, so the cipher is its own
    inverse.
    """
    buf = bytearray(data)
    length = len(buf)
    if length == 0:
        return bytes(buf)

    key = length & 0xFF
    for i in range(length - 1, -1, -1):
        buf[i] ^= key

        next_key = i & 0x0F
        next_key = (next_key + 0x55) & 0xFF
        next_key ^= (i * 11) & 0xFF
        next_key ^= key
        next_key ^= 0xAA
        key = next_key

    return bytes(buf)
