# extractors/schema_normalizer.py
"""
JSON Schema -> navigable TreeNode hierarchy

Every pass builds a brand-new tree. Node identity is the dot path from the
root (root.address.city); array elements share one node under the fixed
'items' segment. A '.' inside a property name is written as '~1' in its id
segment (and '~' as '~0'). Each node carries its obligation (required /
conditional / optional) and the literal text of the validation keywords it
declares.

Obligation: 'required' arrays under allOf/anyOf/oneOf and then/else mark
their names conditional. The 'if' subschema is only a test, so a 'required'
list inside it obligates nothing.

Recursion: a $ref (or a composition branch) that leads back to a definition
being expanded becomes a terminal node with the rule 'recursive: <ref>'. Such
a loop is rejected only if no step on it can end the descent: every step is
required, none allows null, no array on it may be empty and no
anyOf/oneOf/then/else alternative avoids the recursive branch.

normalize_value() builds the same kind of tree from a sample JSON instance.
"""
import json
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

from mapper.schemas import Obligation, TreeNode
from utils.decorators import log_execution_time
from utils.errors import SchemaError

logger = logging.getLogger(__name__)

ROOT_ID = 'root'
ITEMS_SEGMENT = 'items'

RULE_KEYWORDS = (
    'pattern', 'format', 'enum', 'const',
    'minimum', 'maximum', 'exclusiveMinimum', 'exclusiveMaximum', 'multipleOf',
    'minLength', 'maxLength', 'minItems', 'maxItems', 'uniqueItems',
    'minProperties', 'maxProperties',
)
CUSTOM_RULE_KEYWORDS = ('x-validation', 'x-validator', 'x-rule', 'customValidation')
RAW_TEXT_KEYWORDS = ('pattern', 'format')

COMPOSITION_KEYWORDS = ('allOf', 'anyOf', 'oneOf')
BRANCH_KEYWORDS = ('then', 'else')


# --- Fragment shapes (tagged union over what the walker understands) ---

@dataclass(frozen=True)
class ObjectShape:
    """Object fragment with its own and composed properties merged in order"""
    fragment: Dict[str, Any]
    properties: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    required: frozenset = frozenset()
    conditional: frozenset = frozenset()

    def obligation_of(self, name: str) -> Obligation:
        if name in self.required:
            return 'required'
        if name in self.conditional:
            return 'conditional'
        return 'optional'


@dataclass(frozen=True)
class ArrayShape:
    fragment: Dict[str, Any]
    items: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class LeafShape:
    fragment: Dict[str, Any]


FragmentShape = Union[ObjectShape, ArrayShape, LeafShape]


def _json_type(value: Any) -> str:
    if value is None:
        return 'null'
    if isinstance(value, bool):
        return 'boolean'
    if isinstance(value, int):
        return 'integer'
    if isinstance(value, float):
        return 'number'
    if isinstance(value, str):
        return 'string'
    if isinstance(value, list):
        return 'array'
    return 'object'


def _declared_types(fragment: Dict[str, Any]) -> List[str]:
    declared = fragment.get('type')
    if isinstance(declared, str):
        return [declared]
    if isinstance(declared, list):
        return [str(t) for t in declared]
    return []


def id_segment(name: str) -> str:
    """Escape a property name for use as one node id segment ('~' -> '~0', '.' -> '~1')"""
    return name.replace('~', '~0').replace('.', '~1')


def join_node_id(parent_id: str, name: str) -> str:
    return f"{parent_id}.{id_segment(name)}"


def split_node_id(node_id: str) -> List[str]:
    """Node id -> unescaped segment names, root included"""
    return [part.replace('~1', '.').replace('~0', '~') for part in node_id.split('.')]


def node_name(node_id: str) -> str:
    return split_node_id(node_id)[-1]


def display_path(node_id: str) -> str:
    """Human label for a node id: root.a.b -> 'a -> b'"""
    parts = split_node_id(node_id)
    if parts and parts[0] == ROOT_ID:
        parts = parts[1:]
    return ' -> '.join(parts) if parts else ROOT_ID


def _ends_recursion(fragment: Dict[str, Any]) -> bool:
    """A value of this fragment may stop the descent: null is allowed, or an empty array is"""
    types = _declared_types(fragment)
    if 'null' in types:
        return True
    is_array = 'array' in types or (not types and ('items' in fragment or 'prefixItems' in fragment))
    if not is_array:
        return False
    min_items = fragment.get('minItems', 0)
    return not isinstance(min_items, (int, float)) or min_items < 1


class _SchemaWalker:
    """Single-use walker; holds the document for $ref lookups and the expansion stack"""

    def __init__(self, document: Dict[str, Any], custom_keywords: Sequence[str] = ()):
        self.document = document
        self.rule_keywords = set(RULE_KEYWORDS) | set(CUSTOM_RULE_KEYWORDS) | set(custom_keywords)
        self.raw_text_keywords = set(RAW_TEXT_KEYWORDS) | set(CUSTOM_RULE_KEYWORDS) | set(custom_keywords)
        # (ref, index into _forced when the ref started expanding)
        self._expanding: List[Tuple[str, int]] = [('#', 0)]
        # one entry per node on the current path: True when a valid instance must descend through it
        self._forced: List[bool] = []
        self._seen_ids = set()

    @property
    def node_count(self) -> int:
        return len(self._seen_ids)

    # --- $ref handling ---

    def _lookup(self, ref: str, path: str) -> Dict[str, Any]:
        if not isinstance(ref, str) or not ref.startswith('#'):
            raise SchemaError(f"Only local $ref values are supported, got {ref!r}", path)

        target: Any = self.document
        pointer = ref[1:]
        if pointer:
            if not pointer.startswith('/'):
                raise SchemaError(f"Unsupported $ref pointer {ref!r}", path)
            for token in pointer[1:].split('/'):
                token = token.replace('~1', '/').replace('~0', '~')
                if isinstance(target, dict) and token in target:
                    target = target[token]
                elif isinstance(target, list) and token.isdigit() and int(token) < len(target):
                    target = target[int(token)]
                else:
                    raise SchemaError(f"Unresolvable $ref {ref!r}", path)

        if not isinstance(target, dict):
            raise SchemaError(f"$ref {ref!r} does not point to a schema object", path)
        return target

    def resolve(self, fragment: Any, path: str) -> Tuple[Dict[str, Any], List[str]]:
        """Follow a $ref chain; sibling keywords next to $ref override the target's"""
        if not isinstance(fragment, dict):
            raise SchemaError(f"Schema fragment must be an object, got {type(fragment).__name__}", path)

        chain: List[str] = []
        current = fragment
        while '$ref' in current:
            ref = current['$ref']
            if ref in chain:
                raise SchemaError(f"Cyclic $ref chain {' -> '.join(chain + [ref])} has no base case", path)
            chain.append(ref)
            siblings = {k: v for k, v in current.items() if k != '$ref'}
            current = {**self._lookup(ref, path), **siblings}
        return current, chain

    # --- classification ---

    def _merge_properties(self, target: Dict[str, Dict[str, Any]], properties: Any, path: str):
        if not isinstance(properties, dict):
            raise SchemaError("'properties' must be an object", path)
        for name, sub in properties.items():
            if not isinstance(sub, dict):
                if sub is True or sub is False:
                    sub = {}
                else:
                    raise SchemaError(f"Property '{name}' must be a schema object", path)
            if name in target:
                merged = dict(target[name])
                for keyword, value in sub.items():
                    merged.setdefault(keyword, value)
                target[name] = merged
            else:
                target[name] = sub

    def _required_names(self, fragment: Dict[str, Any], path: str) -> List[str]:
        required = fragment.get('required', [])
        if isinstance(required, bool):
            # draft-03 style boolean flag on the property itself; handled by the parent
            return []
        if not isinstance(required, list) or not all(isinstance(r, str) for r in required):
            raise SchemaError("'required' must be an array of property names", path)
        return required

    def _collect(self, fragment, path, conditional, properties, required, cond_required, visited=()):
        if 'properties' in fragment:
            self._merge_properties(properties, fragment['properties'], path)

        names = self._required_names(fragment, path)
        (cond_required if conditional else required).update(names)

        branches = []
        for keyword in COMPOSITION_KEYWORDS:
            if keyword not in fragment:
                continue
            if not isinstance(fragment[keyword], list):
                raise SchemaError(f"'{keyword}' must be an array of schemas", path)
            branches.extend((f"{path}.{keyword}[{i}]", b) for i, b in enumerate(fragment[keyword]))
        branches.extend((f"{path}.{kw}", fragment[kw]) for kw in BRANCH_KEYWORDS if kw in fragment)

        active = [ref for ref, _ in self._expanding]
        for branch_path, branch in branches:
            if isinstance(branch, bool):
                continue
            resolved, refs = self.resolve(branch, branch_path)
            if any(ref in active for ref in refs):
                # recursive branch; build() records it as a 'recursive:' rule
                continue
            for ref in refs:
                if ref in visited:
                    raise SchemaError(f"Composition re-enters $ref {ref!r}", branch_path)
            self._collect(resolved, branch_path, True, properties, required, cond_required,
                          visited + tuple(refs))

    def _has_composed_properties(self, fragment: Dict[str, Any], path: str, visited: Tuple[str, ...] = ()) -> bool:
        branches = []
        for keyword in COMPOSITION_KEYWORDS:
            value = fragment.get(keyword)
            if isinstance(value, list):
                branches.extend(value)
        branches.extend(fragment.get(keyword) for keyword in BRANCH_KEYWORDS)

        for branch in branches:
            if not isinstance(branch, dict):
                continue
            resolved, refs = self.resolve(branch, path)
            if any(ref in visited for ref in refs):
                continue
            if 'properties' in resolved or 'object' in _declared_types(resolved):
                return True
            if self._has_composed_properties(resolved, path, visited + tuple(refs)):
                return True
        return False

    def _composition_reentry(self, fragment: Dict[str, Any], path: str,
                             visited: Tuple[str, ...] = ()) -> Optional[Tuple[str, bool]]:
        """
        First $ref under expansion that a composition branch leads back to

        Returns (ref, has_alternative); has_alternative is True when an anyOf/oneOf
        sibling or a then/else branch lets an instance avoid the recursive branch.
        """
        active = {ref for ref, _ in self._expanding}
        for keyword in COMPOSITION_KEYWORDS + BRANCH_KEYWORDS:
            value = fragment.get(keyword)
            if isinstance(value, dict):
                branches = [value]
            elif isinstance(value, list):
                branches = value
            else:
                continue
            optional_branch = keyword in BRANCH_KEYWORDS or (keyword != 'allOf' and len(branches) > 1)

            for branch in branches:
                if not isinstance(branch, dict):
                    continue
                resolved, refs = self.resolve(branch, path)
                hit = next((ref for ref in refs if ref in active), None)
                if hit is not None:
                    return hit, optional_branch
                if any(ref in visited for ref in refs):
                    continue
                nested = self._composition_reentry(resolved, path, visited + tuple(refs))
                if nested is not None:
                    return nested[0], optional_branch or nested[1]
        return None

    def classify(self, fragment: Dict[str, Any], path: str) -> FragmentShape:
        types = _declared_types(fragment)
        is_object = 'object' in types or (
            not types and ('properties' in fragment or self._has_composed_properties(fragment, path))
        )
        if is_object:
            properties: Dict[str, Dict[str, Any]] = {}
            required, cond_required = set(), set()
            self._collect(fragment, path, False, properties, required, cond_required)
            return ObjectShape(
                fragment=fragment,
                properties=properties,
                required=frozenset(required),
                conditional=frozenset(cond_required - required),
            )

        if 'array' in types or (not types and ('items' in fragment or 'prefixItems' in fragment)):
            items = fragment.get('items')
            if isinstance(items, list):
                items = items[0] if items else None
            if items is None and isinstance(fragment.get('prefixItems'), list) and fragment['prefixItems']:
                items = fragment['prefixItems'][0]
            if isinstance(items, bool):
                items = None
            if items is not None and not isinstance(items, dict):
                raise SchemaError("'items' must be a schema object", path)
            return ArrayShape(fragment=fragment, items=items)

        return LeafShape(fragment=fragment)

    # --- node attributes ---

    def type_of(self, fragment: Dict[str, Any], shape: FragmentShape) -> str:
        types = _declared_types(fragment)
        if types:
            return '|'.join(types)
        if isinstance(shape, ObjectShape):
            return 'object'
        if isinstance(shape, ArrayShape):
            return 'array'
        if 'const' in fragment:
            return _json_type(fragment['const'])
        enum = fragment.get('enum')
        if isinstance(enum, list) and enum:
            enum_types = list(dict.fromkeys(_json_type(v) for v in enum))
            return '|'.join(enum_types)
        branch_types: List[str] = []
        for keyword in ('anyOf', 'oneOf'):
            for branch in fragment.get(keyword) or []:
                if isinstance(branch, dict):
                    branch_types.extend(_declared_types(branch))
        if branch_types:
            return '|'.join(dict.fromkeys(branch_types))
        return 'unknown'

    def rules_of(self, fragment: Dict[str, Any]) -> List[str]:
        rules = []
        for keyword, value in fragment.items():
            if keyword not in self.rule_keywords:
                continue
            if keyword in self.raw_text_keywords and isinstance(value, str):
                rules.append(f"{keyword}: {value}")
            elif keyword == 'enum' and isinstance(value, list):
                rules.append("enum: " + ', '.join(json.dumps(v, ensure_ascii=False, default=str) for v in value))
            else:
                rules.append(f"{keyword}: {json.dumps(value, ensure_ascii=False, default=str)}")
        return rules

    # --- tree building ---

    def _check_base_case(self, ref: str, forced: bool, node_id: str, depth: int):
        """A loop where every step must be present (required, not null, non-empty array) never ends"""
        start = next(start for r, start in self._expanding if r == ref)
        loop = self._forced[start + 1:depth] + [forced]
        if all(loop):
            raise SchemaError(f"Cyclic $ref {ref!r} has no base case (every step is required)", node_id)

    def _recursive_type(self, fragment: Dict[str, Any]) -> str:
        types = _declared_types(fragment)
        if not types:
            for keyword in COMPOSITION_KEYWORDS:
                for branch in fragment.get(keyword) or []:
                    if not isinstance(branch, dict):
                        continue
                    target, _ = self.resolve(branch, ROOT_ID)
                    types.extend(_declared_types(target) or ['object'])
        return '|'.join(dict.fromkeys(types)) or 'object'

    def _recursive_node(self, name: str, node_id: str, node_type: str, description: Optional[str],
                        obligation: Obligation, ref: str) -> TreeNode:
        logger.debug(f"Recursive $ref {ref} at {node_id}; not expanded further")
        return TreeNode(
            id=node_id,
            name=name,
            type=node_type,
            description=description,
            obligation=obligation,
            rules=[f"recursive: {ref}"],
        )

    def _register_id(self, node_id: str, path: str):
        if node_id in self._seen_ids:
            raise SchemaError(f"Duplicate node id '{node_id}'", path)
        self._seen_ids.add(node_id)

    def build(self, name: str, node_id: str, raw: Any, obligation: Obligation) -> TreeNode:
        self._register_id(node_id, node_id)
        fragment, refs = self.resolve(raw, node_id)
        description = fragment.get('description')
        if description is not None and not isinstance(description, str):
            description = str(description)

        forced = obligation == 'required' and not _ends_recursion(fragment)

        loop_ref = next((ref for ref, _ in self._expanding if ref in refs), None)
        if loop_ref is not None:
            self._check_base_case(loop_ref, forced, node_id, len(self._forced))
            node_type = '|'.join(_declared_types(fragment)) or ('array' if 'items' in fragment else 'object')
            return self._recursive_node(name, node_id, node_type, description, obligation, loop_ref)

        depth = len(self._forced)
        self._expanding.extend((ref, depth) for ref in refs)
        self._forced.append(forced)
        try:
            extra_rules: List[str] = []
            reentry = self._composition_reentry(fragment, node_id)
            if reentry is not None:
                loop_ref, has_alternative = reentry
                self._check_base_case(loop_ref, forced and not has_alternative, node_id, depth)
                if 'properties' not in fragment and 'items' not in fragment:
                    return self._recursive_node(name, node_id, self._recursive_type(fragment), description,
                                                obligation, loop_ref)
                # own structure is kept; the recursive branch is left out of it
                extra_rules.append(f"recursive: {loop_ref}")

            shape = self.classify(fragment, node_id)
            children: List[TreeNode] = []
            if isinstance(shape, ObjectShape):
                for prop_name, prop_schema in shape.properties.items():
                    children.append(self.build(
                        prop_name, join_node_id(node_id, prop_name), prop_schema, shape.obligation_of(prop_name)
                    ))
            elif isinstance(shape, ArrayShape) and shape.items is not None:
                children.append(self.build(
                    ITEMS_SEGMENT, f"{node_id}.{ITEMS_SEGMENT}", shape.items, obligation
                ))

            return TreeNode(
                id=node_id,
                name=name,
                type=self.type_of(fragment, shape),
                description=description,
                obligation=obligation,
                rules=self.rules_of(fragment) + extra_rules,
                children=children,
            )
        finally:
            self._forced.pop()
            if refs:
                del self._expanding[-len(refs):]


def classify_fragment(fragment: Dict[str, Any]) -> FragmentShape:
    """Classify a standalone fragment (local $refs resolve against the fragment itself)"""
    walker = _SchemaWalker(fragment)
    resolved, _ = walker.resolve(fragment, ROOT_ID)
    return walker.classify(resolved, ROOT_ID)


@log_execution_time
def normalize(schema: Dict[str, Any], root_name: str = ROOT_ID,
              custom_keywords: Optional[Iterable[str]] = None) -> TreeNode:
    """
    Convert a JSON Schema document into a TreeNode hierarchy

    Args:
        schema: Parsed JSON Schema (must be an object)
        root_name: Display name of the root node (its id is always 'root')
        custom_keywords: Extra keywords whose literal text is collected as rules

    Returns:
        Root TreeNode; children follow the schema's property declaration order

    Raises:
        SchemaError: non-object root, malformed keywords, broken or cyclic $ref
    """
    if not isinstance(schema, dict):
        raise SchemaError(f"Schema root must be a JSON object, got {type(schema).__name__}")

    walker = _SchemaWalker(schema, tuple(custom_keywords or ()))
    root = walker.build(root_name, ROOT_ID, schema, 'required')

    if root.description is None and isinstance(schema.get('title'), str):
        root = root.model_copy(update={'description': schema['title']})

    logger.info(f"Normalized schema '{schema.get('title', root_name)}' into {walker.node_count} nodes")
    return root


def iter_nodes(tree: TreeNode) -> Iterator[TreeNode]:
    """Breadth-first traversal starting at the root"""
    queue = deque([tree])
    while queue:
        node = queue.popleft()
        yield node
        queue.extend(node.children)


def find_node(tree: TreeNode, node_id: str) -> Optional[TreeNode]:
    for node in iter_nodes(tree):
        if node.id == node_id:
            return node
    return None


def leaf_nodes(tree: TreeNode) -> List[TreeNode]:
    return [node for node in iter_nodes(tree) if node.is_leaf]


# --- sample JSON instances ---

SCHEMA_MARKERS = ('$schema', '$ref', '$defs', 'definitions', 'allOf', 'anyOf', 'oneOf')
PREVIEW_LENGTH = 64
PREVIEW_ITEMS = 5


def is_likely_schema(document: Any) -> bool:
    """Heuristic used to tell a JSON Schema from a plain JSON sample"""
    if not isinstance(document, dict):
        return False
    if any(marker in document for marker in SCHEMA_MARKERS):
        return True
    if isinstance(document.get('properties'), dict):
        return True
    return document.get('type') in ('object', 'array')


def _short_preview(value: Any) -> str:
    kind = _json_type(value)
    if kind == 'string':
        text = ' '.join(value.split())
        return '"' + (text[:24] + '…' if len(text) > 24 else text) + '"'
    if kind == 'array':
        return '[…]'
    if kind == 'object':
        return '{…}'
    return json.dumps(value)


def _summarize(value: Any, kind: str) -> Tuple[Optional[str], Optional[str]]:
    """(description, value_preview) for one sample value"""
    if kind == 'string':
        preview = value if len(value) <= PREVIEW_LENGTH else value[:PREVIEW_LENGTH - 3] + '…'
        return f"String of length {len(value)}.", f'"{preview}"'
    if kind == 'integer':
        return "Numeric value.", json.dumps(value)
    if kind == 'number':
        return "Floating-point numeric value.", json.dumps(value)
    if kind == 'boolean':
        return "Boolean value.", json.dumps(value)
    if kind == 'null':
        return "Null value.", None
    if kind == 'array':
        count = len(value)
        example = f" (e.g., {_json_type(value[0])})" if value else ''
        more = ', …' if count > PREVIEW_ITEMS else ''
        items = ', '.join(_short_preview(v) for v in value[:PREVIEW_ITEMS])
        return f"Array with {count} item{'' if count == 1 else 's'}{example}.", f"[{items}{more}]"
    keys = sorted(value, key=str)
    more = ', …' if len(keys) > PREVIEW_ITEMS else ''
    return (f"Object with {len(keys)} key{'' if len(keys) == 1 else 's'}.",
            '{ ' + ', '.join(str(k) for k in keys[:PREVIEW_ITEMS]) + more + ' }')


def _value_node(name: str, node_id: str, value: Any, obligation: Obligation) -> TreeNode:
    kind = _json_type(value)
    description, preview = _summarize(value, kind)
    children: List[TreeNode] = []
    if kind == 'object':
        for key in sorted(value, key=str):
            children.append(_value_node(str(key), join_node_id(node_id, str(key)), value[key], 'optional'))
    elif kind == 'array' and value:
        # elements share one node, shaped after the first element
        children.append(_value_node(ITEMS_SEGMENT, f"{node_id}.{ITEMS_SEGMENT}", value[0], obligation))
    return TreeNode(
        id=node_id,
        name=name,
        type=kind,
        description=description,
        obligation=obligation,
        value_preview=preview,
        children=children,
    )


@log_execution_time
def normalize_value(value: Any, root_name: str = ROOT_ID) -> TreeNode:
    """
    Build a tree from a sample JSON document instead of a schema

    Types are inferred from the values, object keys are sorted, every node
    below the root is optional and carries a short value preview.
    """
    root = _value_node(root_name, ROOT_ID, value, 'required')
    logger.info(f"Built tree from a sample {_json_type(value)} value "
                f"({sum(1 for _ in iter_nodes(root))} nodes)")
    return root


def build_tree(document: Any, custom_keywords: Optional[Iterable[str]] = None) -> TreeNode:
    """normalize() for JSON Schemas, normalize_value() for anything else"""
    if is_likely_schema(document):
        return normalize(document, custom_keywords=custom_keywords)
    return normalize_value(document)
