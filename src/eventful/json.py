""" Wrapper module for the JSON encoding used on the wire and in
    configuration files. Both :func:`dumps` and :func:`loads` deal in
    bytes, matching what msgspec produces natively.
"""

import msgspec

encoder = msgspec.json.Encoder()
decoder = msgspec.json.Decoder()

dumps = encoder.encode


def loads(data):
    """ Decode JSON *data*, which may be bytes or str. Any decoding problem
        is raised as :class:`ValueError` so callers need not know which
        library is underneath.
    """

    if isinstance(data, str):
        data = data.encode()

    try:
        return decoder.decode(data)
    except msgspec.DecodeError as e:
        raise ValueError(str(e)) from e


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
