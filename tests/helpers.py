"""Builders for protocol-shaped DOM nodes."""


def make_document(*children, attributes=None):
    """``#document`` node with a doctype and an ``<html>`` element holding ``children``."""
    return {
        "nodeId": 1,
        "nodeType": 9,
        "nodeName": "#document",
        "children": [
            {"nodeId": 2, "nodeType": 10, "nodeName": "html"},
            {
                "nodeId": 3,
                "nodeType": 1,
                "nodeName": "HTML",
                "attributes": attributes or [],
                "children": list(children),
            },
        ],
    }


def make_element(node_id, node_name, attributes=None, children=None):
    return {
        "nodeId": node_id,
        "nodeType": 1,
        "nodeName": node_name.upper(),
        "attributes": attributes or [],
        "children": children or [],
    }
