"""
A pretty-printer for evaluated values and symbols.
"""
import collections.abc


class Printer:
    """Formats values the way the shell echoes them."""

    def __init__(self, indent_width=2, width=80):
        self._indent_char = " " * indent_width
        self._width = width
        self._handlers = self._create_handlers()

    def pformat(self, obj, level=0):
        """Public entry point to format an object."""
        handler = self._get_handler(obj)
        return handler(obj, level)

    def _get_handler(self, obj):
        """Dispatcher to find the correct formatting method."""
        obj_type = type(obj)
        if obj_type in self._handlers:
            return self._handlers[obj_type]
        # Symbols and anything else that knows how to show itself
        show = getattr(obj, "show", None)
        if callable(show):
            return lambda o, l: o.show()
        if isinstance(obj, collections.abc.Mapping): return self._pformat_dict
        if isinstance(obj, (list, tuple, set, frozenset)): return self._pformat_sequence
        # Default to Python's repr for unknown types
        return lambda o, l: repr(o)

    def _create_handlers(self):
        return {
            str: self._pformat_str,
            int: self._pformat_primitive,
            float: self._pformat_primitive,
            complex: self._pformat_primitive,
            bool: self._pformat_primitive,
            type(None): self._pformat_primitive,
            bytes: self._pformat_bytes,
            list: self._pformat_sequence,
            tuple: self._pformat_sequence,
            set: self._pformat_sequence,
            frozenset: self._pformat_sequence,
            dict: self._pformat_dict,
        }

    def _pformat_primitive(self, obj, level):
        return str(obj)

    def _pformat_str(self, obj, level):
        return repr(obj)

    def _pformat_bytes(self, obj, level):
        return repr(obj)

    def _brackets(self, obj):
        match obj:
            case list():
                return "[", "]"
            case tuple():
                return "(", ")"
            case frozenset():
                return "frozenset({", "})"
            case _:
                return "{", "}"

    def _layout(self, items, open_, close, level):
        """Inline when it fits on one line, otherwise one item per line."""
        inline = f"{open_}{', '.join(items)}{close}"
        if len(inline) + len(self._indent_char) * level <= self._width and '\n' not in inline:
            return inline
        indent = self._indent_char * (level + 1)
        body = ",\n".join(f"{indent}{item}" for item in items)
        return f"{open_}\n{body}\n{self._indent_char * level}{close}"

    def _pformat_sequence(self, obj, level):
        open_, close = self._brackets(obj)
        if isinstance(obj, (set, frozenset)) and not obj:
            return "set()" if isinstance(obj, set) else "frozenset()"
        items = [self.pformat(item, level + 1) for item in obj]
        if isinstance(obj, tuple) and len(items) == 1:
            return f"({items[0]},)"
        return self._layout(items, open_, close, level)

    def _pformat_dict(self, obj, level):
        items = [f"{self.pformat(k, level + 1)}: {self.pformat(v, level + 1)}" for k, v in obj.items()]
        return self._layout(items, "{", "}", level)
