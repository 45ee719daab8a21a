"""
StaticSite CRD

Renders the CustomResourceDefinition for StaticSite from the resource model.
Kubernetes requires structural schemas, so the pydantic JSON schema is
flattened: $refs inlined, Optional unions collapsed, titles dropped.
"""
from typing import Any, Dict

from .models import StaticSiteSpec

GROUP = "realliance.net"
VERSION = "v1"
KIND = "StaticSite"
PLURAL = "sites"
SINGULAR = "site"


def _structural(node: Any, defs: Dict[str, Any]) -> Any:
    if isinstance(node, list):
        return [_structural(item, defs) for item in node]
    if not isinstance(node, dict):
        return node

    if "$ref" in node:
        target = defs[node["$ref"].rsplit("/", 1)[-1]]
        merged = {**target, **{k: v for k, v in node.items() if k != "$ref"}}
        return _structural(merged, defs)

    if "allOf" in node and len(node["allOf"]) == 1:
        rest = {k: v for k, v in node.items() if k != "allOf"}
        return _structural({**node["allOf"][0], **rest}, defs)

    if "anyOf" in node:
        options = [option for option in node["anyOf"] if option.get("type") != "null"]
        rest = {k: v for k, v in node.items() if k != "anyOf"}
        if len(options) == 1:
            return _structural({**options[0], **rest}, defs)

    out = {}
    for key, value in node.items():
        if key in ("title", "$defs"):
            continue
        if key == "default" and value is None:
            continue
        if key == "properties":
            out[key] = {name: _structural(prop, defs) for name, prop in value.items()}
        else:
            out[key] = _structural(value, defs)
    return out


def spec_schema() -> Dict[str, Any]:
    """OpenAPI v3 structural schema of the StaticSite spec."""
    schema = StaticSiteSpec.model_json_schema(by_alias=True)
    return _structural(schema, schema.get("$defs", {}))


def build_crd() -> Dict[str, Any]:
    """The apiextensions.k8s.io/v1 CustomResourceDefinition for StaticSite."""
    return {
        "apiVersion": "apiextensions.k8s.io/v1",
        "kind": "CustomResourceDefinition",
        "metadata": {"name": f"{PLURAL}.{GROUP}"},
        "spec": {
            "group": GROUP,
            "names": {
                "kind": KIND,
                "plural": PLURAL,
                "singular": SINGULAR,
                "shortNames": [],
            },
            "scope": "Namespaced",
            "versions": [{
                "name": VERSION,
                "served": True,
                "storage": True,
                "subresources": {},
                "schema": {
                    "openAPIV3Schema": {
                        "description": "A git-hosted static site built into a container image",
                        "type": "object",
                        "required": ["spec"],
                        "properties": {
                            "spec": spec_schema(),
                        },
                    },
                },
            }],
        },
    }
