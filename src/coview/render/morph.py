"""Tree-diff patching of a parsed document toward a target tree.

Existing nodes are updated in place where the target has a compatible node
at the same position (same tag and id, or same kind of text node); elements
with an ``id`` are matched by id and tag name even when they moved.
Everything else is inserted or removed. A ``should_update`` hook can veto
changes to an existing element and its subtree.
"""

from collections.abc import Callable

from bs4 import NavigableString, PageElement, Tag

ShouldUpdate = Callable[[Tag, Tag], bool]


def morph(from_el: Tag, to_el: Tag, should_update: ShouldUpdate | None = None) -> None:
    """Patch ``from_el`` in place so it matches ``to_el``.

    ``to_el`` is consumed: nodes may be moved out of it into the patched tree.
    """
    if should_update is not None and not should_update(from_el, to_el):
        return
    _morph_attributes(from_el, to_el)
    _morph_children(from_el, to_el, should_update)


def _morph_attributes(from_el: Tag, to_el: Tag) -> None:
    for name in [n for n in from_el.attrs if n not in to_el.attrs]:
        del from_el[name]
    for name, value in to_el.attrs.items():
        if from_el.get(name) != value:
            from_el[name] = value


def _morph_children(from_parent: Tag, to_parent: Tag, should_update: ShouldUpdate | None) -> None:
    keyed = {
        el["id"]: el
        for el in from_parent.find_all(True, recursive=False)
        if isinstance(el.get("id"), str)
    }
    index = 0
    for to_child in list(to_parent.contents):
        current = from_parent.contents[index] if index < len(from_parent.contents) else None
        key = to_child.get("id") if isinstance(to_child, Tag) else None

        if isinstance(key, str) and key in keyed and keyed[key].name == to_child.name:
            match = keyed.pop(key)
            if match is not current:
                from_parent.insert(index, match.extract())
            morph(match, to_child, should_update)
        elif current is not None and _compatible(current, to_child):
            if isinstance(current, Tag) and isinstance(to_child, Tag):
                if isinstance(current.get("id"), str):
                    keyed.pop(current["id"], None)
                morph(current, to_child, should_update)
            elif str(current) != str(to_child):
                current.replace_with(type(to_child)(str(to_child)))
        else:
            from_parent.insert(index, to_child.extract())
        index += 1

    for leftover in list(from_parent.contents[index:]):
        leftover.extract()


def _compatible(current: PageElement, incoming: PageElement) -> bool:
    if isinstance(current, Tag) and isinstance(incoming, Tag):
        return current.name == incoming.name and current.get("id") == incoming.get("id")
    if isinstance(current, NavigableString) and isinstance(incoming, NavigableString):
        return type(current) is type(incoming)
    return False
