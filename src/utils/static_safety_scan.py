import ast
from typing import Iterable, List, Optional, Tuple

# NOTE: this module is also imported by the sandbox child as a sibling file,
# so it must stay stdlib-only.

# Operating system, process control, networking, dynamic loading and
# interpreter internals. Data, numeric, date/time and text modules stay allowed.
BLOCKED_MODULES = frozenset({
    "os", "sys", "subprocess", "socket", "ssl", "select", "selectors",
    "asyncio", "multiprocessing", "threading", "_thread", "concurrent",
    "signal", "pty", "fcntl", "termios", "resource", "posix", "nt",
    "ctypes", "cffi", "mmap", "gc", "importlib", "imp", "pkgutil",
    "zipimport", "runpy", "code", "codeop", "builtins", "inspect",
    "shutil", "pathlib", "glob", "tempfile", "io", "fileinput",
    "pickle", "marshal", "shelve", "dbm", "sqlite3",
    "http", "urllib", "urllib3", "requests", "httpx", "aiohttp",
    "ftplib", "smtplib", "poplib", "imaplib", "telnetlib", "xmlrpc",
    "webbrowser", "pdb", "openai", "google",
})

BLOCKED_CALLS = frozenset({
    "eval", "exec", "compile", "__import__", "open", "input",
    "breakpoint", "globals", "vars", "getattr", "setattr", "delattr",
    "exit", "quit", "help",
})

# Reader/writer helpers of pandas and numpy that touch the filesystem or network.
BLOCKED_IO_READERS = frozenset({
    "read_csv", "read_table", "read_excel", "read_json", "read_parquet",
    "read_pickle", "read_sql", "read_sql_query", "read_sql_table",
    "read_html", "read_xml", "read_feather", "read_hdf", "read_orc",
    "read_sas", "read_spss", "read_stata", "read_fwf", "read_clipboard",
    "read_gbq", "loadtxt", "genfromtxt", "fromfile", "memmap",
})
BLOCKED_IO_WRITERS = frozenset({
    "to_csv", "to_excel", "to_json", "to_parquet", "to_pickle", "to_sql",
    "to_html", "to_xml", "to_feather", "to_hdf", "to_orc", "to_stata",
    "to_clipboard", "to_gbq", "to_markdown", "to_latex", "to_string",
    "tofile", "savetxt", "save", "savez", "savez_compressed",
})
_WRITER_PATH_KWARGS = {"path_or_buf", "path", "excel_writer", "buf", "con", "destination_table", "file", "fname"}

BLOCKED_ATTRS = {
    "pandas.io": "Private Pandas API",
    "pd.io": "Private Pandas API",
}
# Frame/traceback handles give access to other modules' globals and builtins.
BLOCKED_ATTR_NAMES = frozenset({
    "f_globals", "f_locals", "f_builtins", "f_back", "f_code",
    "tb_frame", "tb_next", "gi_frame", "cr_frame", "ag_frame",
})
ALLOWED_DUNDERS = frozenset({"__name__", "__doc__", "__len__", "__init__"})


def scan_code_safety(
    code: str,
    blocked_modules: Optional[Iterable[str]] = None,
    blocked_calls: Optional[Iterable[str]] = None,
) -> Tuple[bool, List[str]]:
    """
    Scans transformation code for forbidden patterns using AST analysis.
    Returns (is_safe: bool, violations: List[str]).

    POLICY:
    - ALLOW: pandas/numpy/datetime/math/re/statistics and similar data modules.
    - BLOCK: OS, process, network and dynamic-loading modules.
    - BLOCK: eval, exec, compile, open and attribute reflection.
    - BLOCK: pandas/numpy file readers, and writers given a destination.
    """
    modules = frozenset(blocked_modules) if blocked_modules is not None else BLOCKED_MODULES
    calls = frozenset(blocked_calls) if blocked_calls is not None else BLOCKED_CALLS
    violations: List[str] = []

    try:
        tree = ast.parse(code)
    except SyntaxError as e:
        return False, [f"Syntax Error in code: {e}"]

    class SecurityVisitor(ast.NodeVisitor):
        def __init__(self):
            self.errors: List[str] = []

        def visit_Import(self, node):
            for alias in node.names:
                base_module = alias.name.split(".")[0]
                if base_module in modules:
                    self.errors.append(f"Importing '{alias.name}' is PROHIBITED.")
            self.generic_visit(node)

        def visit_ImportFrom(self, node):
            if node.level:
                self.errors.append("Relative imports are PROHIBITED.")
            if node.module:
                base_module = node.module.split(".")[0]
                if base_module in modules:
                    self.errors.append(f"Importing from '{node.module}' is PROHIBITED.")
                if base_module == "pandas" and "io" in [n.name for n in node.names]:
                    self.errors.append("Importing 'pandas.io' is PROHIBITED.")
            for alias in node.names:
                if alias.name in modules:
                    self.errors.append(f"Importing '{alias.name}' from '{node.module}' is PROHIBITED.")
            self.generic_visit(node)

        def visit_Call(self, node):
            func_name = self._get_func_name(node.func)
            short_name = func_name.rsplit(".", 1)[-1] if func_name else ""
            if func_name in calls:
                self.errors.append(f"Calling '{func_name}' is PROHIBITED.")
            if isinstance(node.func, ast.Attribute):
                if short_name in BLOCKED_IO_READERS:
                    self.errors.append(f"File/network reader '{short_name}' is PROHIBITED.")
                elif short_name in BLOCKED_IO_WRITERS and (
                    node.args or any(k.arg in _WRITER_PATH_KWARGS for k in node.keywords)
                ):
                    self.errors.append(f"Writing output with '{short_name}' is PROHIBITED.")
            self.generic_visit(node)

        def visit_Attribute(self, node):
            attr_name = self._get_func_name(node)
            if attr_name in BLOCKED_ATTRS:
                self.errors.append(f"Usage of '{attr_name}' is PROHIBITED ({BLOCKED_ATTRS[attr_name]}).")
            if node.attr in modules:
                # Allowed modules re-export blocked ones (platform.os, logging.sys).
                self.errors.append(f"Reaching module '{node.attr}' through '{attr_name}' is PROHIBITED.")
            if node.attr in BLOCKED_ATTR_NAMES:
                self.errors.append(f"Access to '{node.attr}' is PROHIBITED.")
            elif node.attr.startswith("__") and node.attr not in ALLOWED_DUNDERS:
                self.errors.append(f"Dunder attribute '{node.attr}' is PROHIBITED.")
            self.generic_visit(node)

        def visit_Name(self, node):
            if node.id.startswith("__") and node.id not in ALLOWED_DUNDERS:
                self.errors.append(f"Name '{node.id}' is PROHIBITED.")
            self.generic_visit(node)

        def _get_func_name(self, node):
            if isinstance(node, ast.Name):
                return node.id
            elif isinstance(node, ast.Attribute):
                return f"{self._get_func_name(node.value)}.{node.attr}"
            return ""

    visitor = SecurityVisitor()
    visitor.visit(tree)
    violations.extend(visitor.errors)

    deduped = list(dict.fromkeys(violations))
    return (len(deduped) == 0, deduped)
