def to_wire(text):
    """
    Turn text into bytes with CRLF line endings, the way the multipart
    batch format wants them.
    """
    if text is None:
        return None
    if isinstance(text, str):
        text = bytes(text, "utf-8")
    text = text.replace(b"\r\n", b"\n")
    text = text.replace(b"\n", b"\r\n")
    return text


def to_normal_str(text):
    """
    Make sure we return a normal string, no matter if we were handed
    bytes, bytearray or memoryview.
    """
    if text is None:
        return text
    if not isinstance(text, str):
        text = bytes(text).decode("utf-8")
    return text
