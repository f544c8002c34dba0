#!/usr/bin/env python
from typing import Dict
from typing import Optional

## Legacy Atom entity payloads put the entity properties in the "d"
## namespace and the type annotations (m:type, m:null, m:etag) in the
## "m" namespace.
nsmap: Dict[str, str] = {
    "atom": "http://www.w3.org/2005/Atom",
    "d": "http://schemas.microsoft.com/ado/2007/08/dataservices",
    "m": "http://schemas.microsoft.com/ado/2007/08/dataservices/metadata",
}


def ns(prefix: str, tag: Optional[str] = None) -> str:
    name = "{%s}" % nsmap[prefix]
    if tag is not None:
        name = "%s%s" % (name, tag)
    return name
