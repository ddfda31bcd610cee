"""
A Python-hosted compiler/executor pair for the rill engine.

The compiler parses each snippet with `ast`, rewrites a trailing expression
into an assignment to the reserved result member, and emits a manifest of the
snippet's module-scope declarations. The executor runs the code object inside
the shared Environment's bindings.
"""
import __future__
import ast
import builtins
import codeop
import keyword
from typing import List, Optional

from rill.rill_datatypes import (
    RESULT_FIELD_NAME, CompileError, CompiledArtifact, Declaration, Environment,
    EvalError, HistoryMismatch, Incomplete, Location, Manifest, Param, Snippet,
    TypeParam, Unit, Value,
)

_NUMERIC = ("bool", "int", "float", "complex")
_LITERAL_TYPES = {
    ast.List: "list", ast.ListComp: "list",
    ast.Tuple: "tuple",
    ast.Dict: "dict", ast.DictComp: "dict",
    ast.Set: "set", ast.SetComp: "set",
    ast.JoinedStr: "str",
    ast.GeneratorExp: "generator",
    ast.Lambda: "function",
    ast.Compare: "bool",
}


def _unparse(node: Optional[ast.AST]) -> Optional[str]:
    return ast.unparse(node) if node is not None else None


def _final_type(annotation: ast.AST):
    """(is_final, inner type) for `Final` / `Final[T]` / `typing.Final[T]`."""
    def is_final_name(n):
        return (isinstance(n, ast.Name) and n.id == "Final") or \
               (isinstance(n, ast.Attribute) and n.attr == "Final")
    if is_final_name(annotation):
        return True, None
    if isinstance(annotation, ast.Subscript) and is_final_name(annotation.value):
        return True, ast.unparse(annotation.slice)
    return False, ast.unparse(annotation)


def _compile_error(e: Exception) -> CompileError:
    # ValueError has no position (NUL bytes on older interpreters).
    return CompileError(f"{type(e).__name__}: {getattr(e, 'msg', e)}",
                        Location(getattr(e, "lineno", None), getattr(e, "offset", None)))


def _type_name(value) -> str:
    """Runtime type name, or `Any` when it cannot appear in an annotation."""
    name = type(value).__name__
    if not name.isidentifier() or keyword.iskeyword(name):
        return "Any"
    return name


class PythonCompiler:
    result_template = "{{name}}: {{type}} = __res"

    def __init__(self, filename: str = "<rill>"):
        self.filename = filename

    def is_complete(self, source: str) -> bool:
        try:
            return codeop.compile_command(source, self.filename, "single") is not None
        except (SyntaxError, ValueError, OverflowError):
            # Complete enough to fail; compile() reports the error.
            return True

    def compile(self, snippet: Snippet, environment: Environment):
        if not self.is_complete(snippet.source):
            return Incomplete()
        try:
            tree = ast.parse(snippet.source, filename=self.filename, mode="exec")
        except (SyntaxError, ValueError) as e:
            return _compile_error(e)

        declarations = self._declarations(tree)
        expr_type = None
        if tree.body and isinstance(tree.body[-1], ast.Expr):
            last = tree.body[-1]
            expr_type = self.infer_type(last.value, environment)
            assign = ast.Assign(targets=[ast.Name(id=RESULT_FIELD_NAME, ctx=ast.Store())],
                                value=last.value)
            tree.body[-1] = ast.copy_location(assign, last)
            declarations.append(Declaration(RESULT_FIELD_NAME, "property", expr_type))
        ast.fix_missing_locations(tree)

        try:
            code = compile(tree, self.filename, "exec",
                           flags=__future__.annotations.compiler_flag, dont_inherit=True)
        except (SyntaxError, ValueError) as e:
            return _compile_error(e)
        manifest = Manifest(environment.namespace, tuple(declarations))
        return CompiledArtifact(snippet, code, manifest, expr_type)

    # --- Manifest -----------------------------------------------------

    def _declarations(self, tree: ast.Module) -> List[Declaration]:
        out: List[Declaration] = []
        self._scan(tree.body, out, conditional=False)
        return out

    def _scan(self, body: List[ast.stmt], out: List[Declaration], conditional: bool) -> None:
        """Collect module-scope binding sites; def and class bodies are not entered."""
        for stmt in body:
            match stmt:
                case ast.ClassDef(name=name):
                    out.append(Declaration(name, "class", conditional=conditional))
                case ast.FunctionDef() | ast.AsyncFunctionDef():
                    out.append(self._function(stmt, conditional))
                case ast.Assign(targets=targets):
                    for target in targets:
                        out.extend(self._targets(target, conditional))
                case ast.AnnAssign(target=ast.Name(id=name), annotation=annotation, value=value) if value is not None:
                    final, type_ = _final_type(annotation)
                    out.append(Declaration(name, "property", type_, mutable=not final,
                                           conditional=conditional))
                case ast.AugAssign(target=target):
                    out.extend(self._targets(target, conditional))
                case ast.Import(names=aliases) | ast.ImportFrom(names=aliases):
                    for alias in aliases:
                        if alias.name == "*":
                            continue
                        out.append(Declaration(alias.asname or alias.name.split(".")[0], "property",
                                               conditional=conditional))
                case ast.Delete(targets=targets):
                    # The name is gone afterwards; it still shadows older symbols.
                    for target in targets:
                        out.extend(self._targets(target, True))
                case ast.For(target=target) | ast.AsyncFor(target=target):
                    out.extend(self._targets(target, True))
                case ast.With(items=items) | ast.AsyncWith(items=items):
                    for item in items:
                        if item.optional_vars is not None:
                            out.extend(self._targets(item.optional_vars, conditional))
            out.extend(self._walrus(stmt))
            self._scan_blocks(stmt, out, conditional)

    def _scan_blocks(self, stmt: ast.stmt, out: List[Declaration], conditional: bool) -> None:
        match stmt:
            case ast.FunctionDef() | ast.AsyncFunctionDef() | ast.ClassDef():
                return
            case ast.With(body=body) | ast.AsyncWith(body=body):
                self._scan(body, out, conditional)
                return
            case ast.Match(cases=cases):
                for case in cases:
                    for node in ast.walk(case.pattern):
                        match node:
                            case ast.MatchAs(name=str(name)) | ast.MatchStar(name=str(name)) | \
                                    ast.MatchMapping(rest=str(name)):
                                out.append(Declaration(name, "property", conditional=True))
                    self._scan(case.body, out, True)
                return
        self._scan(getattr(stmt, "body", []), out, True)
        for handler in getattr(stmt, "handlers", []):
            if handler.name:
                out.append(Declaration(handler.name, "property", conditional=True))
            self._scan(handler.body, out, True)
        self._scan(getattr(stmt, "orelse", []), out, True)
        self._scan(getattr(stmt, "finalbody", []), out, conditional)

    def _walrus(self, node: ast.AST) -> List[Declaration]:
        """`:=` targets in the expressions of `node`, outside nested statements and lambdas."""
        found: List[Declaration] = []
        for child in ast.iter_child_nodes(node):
            if isinstance(child, (ast.stmt, ast.Lambda)):
                continue
            if isinstance(child, ast.NamedExpr):
                found.extend(self._targets(child.target, True))
            found.extend(self._walrus(child))
        return found

    def _targets(self, target: ast.AST, conditional: bool = False) -> List[Declaration]:
        match target:
            case ast.Name(id=name):
                return [Declaration(name, "property", conditional=conditional)]
            case ast.Tuple(elts=elts) | ast.List(elts=elts):
                return [d for elt in elts for d in self._targets(elt, conditional)]
            case ast.Starred(value=value):
                return self._targets(value, conditional)
        # Attribute and subscript targets bind no new name.
        return []

    def _function(self, node, conditional: bool = False) -> Declaration:
        a = node.args
        params = [Param(arg.arg, _unparse(arg.annotation) or "Any")
                  for arg in a.posonlyargs + a.args]
        if a.vararg:
            params.append(Param("*" + a.vararg.arg, _unparse(a.vararg.annotation) or "Any"))
        params += [Param(arg.arg, _unparse(arg.annotation) or "Any") for arg in a.kwonlyargs]
        if a.kwarg:
            params.append(Param("**" + a.kwarg.arg, _unparse(a.kwarg.annotation) or "Any"))

        type_params = []
        for tp in getattr(node, "type_params", None) or []:
            bound = getattr(tp, "bound", None)
            bounds = tuple(_unparse(e) for e in bound.elts) if isinstance(bound, ast.Tuple) else \
                ((ast.unparse(bound),) if bound is not None else ())
            type_params.append(TypeParam(tp.name, "invariant", bounds))
        return Declaration(node.name, "function", params=tuple(params),
                           type_params=tuple(type_params), returns=_unparse(node.returns),
                           conditional=conditional)

    # --- Static types -------------------------------------------------

    def infer_type(self, node: ast.AST, environment: Environment) -> Optional[str]:
        """Best-effort type name of an expression, without evaluating it."""
        for node_type, name in _LITERAL_TYPES.items():
            if isinstance(node, node_type):
                return name
        match node:
            case ast.Constant(value=v):
                return type(v).__name__
            case ast.Name(id=name):
                found, value = self._lookup(name, environment)
                return type(value).__name__ if found else None
            case ast.Call(func=ast.Name(id=name)):
                found, target = self._lookup(name, environment)
                if not found:
                    return None
                if isinstance(target, type):
                    return target.__name__
                ret = (getattr(target, "__annotations__", None) or {}).get("return")
                if ret is None:
                    return None
                return ret if isinstance(ret, str) else getattr(ret, "__name__", repr(ret))
            case ast.UnaryOp(op=ast.Not()):
                return "bool"
            case ast.UnaryOp(operand=operand):
                return self.infer_type(operand, environment)
            case ast.BinOp(left=left, op=op, right=right):
                lt = self.infer_type(left, environment)
                rt = self.infer_type(right, environment)
                if lt in _NUMERIC and rt in _NUMERIC:
                    if isinstance(op, ast.Div):
                        return "complex" if "complex" in (lt, rt) else "float"
                    widest = max(_NUMERIC.index(lt), _NUMERIC.index(rt), 1)
                    return _NUMERIC[widest]
                return lt if lt == rt else None
        return None

    @staticmethod
    def _lookup(name: str, environment: Environment):
        if name in environment:
            return True, environment.read(name)
        if hasattr(builtins, name):
            return True, getattr(builtins, name)
        return False, None


class PythonExecutor:
    def eval(self, artifact: CompiledArtifact, environment: Environment):
        generation = artifact.snippet.generation
        if generation != environment.version:
            return HistoryMismatch(
                f"snippet {artifact.snippet.id} was compiled at generation {generation}, "
                f"environment is at generation {environment.version}")
        try:
            exec(artifact.code, environment.bindings)
        except Exception as e:
            environment.bindings.pop(RESULT_FIELD_NAME, None)
            return EvalError(f"{type(e).__name__}: {e}", e)
        value = environment.bindings.pop(RESULT_FIELD_NAME, None)
        if value is None:
            return Unit(environment)
        return Value(value, _type_name(value), environment)
