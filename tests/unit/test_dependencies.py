"""
tests/unit/test_dependencies.py — DependencyResolver

Covers:
  - Detected imports order a dependency before its dependent
  - Cycles: every change still appears exactly once, cycle is recorded
  - Resolution of index files, Python relative imports and #include
  - Explicit dependsOn hints
  - remove() and unmet_dependencies()
"""

from __future__ import annotations

import pytest

from forgepilot.composer.changes import ChangeStatus, normalise_change
from forgepilot.composer.dependencies import DependencyResolver, detect_references


def _change(filename, content="x = 1", type="MODIFY", **extra):
    return normalise_change({"filename": filename, "type": type, "content": content, **extra})


def _names(changes):
    return [c.filename for c in changes]


class TestDetectReferences:
    def test_js_import_forms(self):
        content = "\n".join([
            "import React from 'react';",
            "import { a } from './a';",
            "import './styles.css';",
            "const b = require('../lib/b');",
            "const c = await import('./c');",
        ])
        assert detect_references("src/app.js", content) == [
            "src/a", "src/styles.css", "lib/b", "src/c",
        ]

    def test_bare_packages_ignored(self):
        assert detect_references("a.js", "import x from 'lodash';") == []

    def test_escaping_root_ignored(self):
        assert detect_references("a.js", "import x from '../outside';") == []

    def test_css_import(self):
        assert detect_references("css/main.css", "@import './base.css';") == ["css/base.css"]

    def test_c_include(self):
        assert detect_references("src/main.c", '#include "util.h"\n#include <stdio.h>\n') == ["src/util.h"]

    def test_python_relative_imports(self):
        content = "from .utils import helper\nfrom ..core.models import User\nfrom . import views\n"
        assert detect_references("pkg/sub/app.py", content) == ["pkg/sub/utils", "pkg/core/models", "pkg/sub"]

    def test_python_imports_only_for_py_files(self):
        assert detect_references("notes.md", "from .utils import helper") == []

    def test_empty_content(self):
        assert detect_references("a.js", "") == []


class TestOrdering:
    def test_detected_import_orders_dependency_first(self):
        y = _change("src/y.js", "import { a } from './x';\nexport const b = a;", type="CREATE")
        x = _change("src/x.js", "export const a = 1;")
        resolver = DependencyResolver()
        resolver.rebuild([y, x])
        assert _names(resolver.get_ordered_changes()) == ["src/x.js", "src/y.js"]
        assert resolver.nodes["src/y.js"].depends_on == {"src/x.js"}
        assert resolver.nodes["src/x.js"].required_by == {"src/y.js"}

    def test_discovery_order_kept_without_edges(self):
        changes = [_change("c.js"), _change("a.js"), _change("b.js")]
        resolver = DependencyResolver()
        resolver.rebuild(changes)
        assert _names(resolver.get_ordered_changes()) == ["c.js", "a.js", "b.js"]

    def test_cycle_yields_each_change_once(self):
        a = _change("a.js", "import b from './b';")
        b = _change("b.js", "import a from './a';")
        resolver = DependencyResolver()
        resolver.rebuild([a, b])
        ordered = resolver.get_ordered_changes()
        assert sorted(_names(ordered)) == ["a.js", "b.js"]
        assert len(ordered) == 2
        assert resolver.cycles == [("b.js", "a.js")]

    def test_index_file_resolution(self):
        app = _change("src/app.js", "import Nav from './components';")
        index = _change("src/components/index.js", "export default 1;", type="CREATE")
        resolver = DependencyResolver()
        resolver.rebuild([app, index])
        assert _names(resolver.get_ordered_changes()) == ["src/components/index.js", "src/app.js"]

    def test_python_package_resolution(self):
        app = _change("pkg/app.py", "from . import views\nfrom .utils import helper\n")
        init = _change("pkg/__init__.py", "", type="DELETE")
        utils = _change("pkg/utils.py", "def helper(): pass", type="CREATE")
        resolver = DependencyResolver()
        resolver.rebuild([app, init, utils])
        assert resolver.nodes["pkg/app.py"].depends_on == {"pkg/__init__.py", "pkg/utils.py"}
        assert _names(resolver.get_ordered_changes())[-1] == "pkg/app.py"

    def test_explicit_depends_on(self):
        page = _change("page.html", "<html></html>", dependsOn=["style.css"])
        style = _change("style.css", "body {}")
        resolver = DependencyResolver()
        resolver.rebuild([page, style])
        assert _names(resolver.get_ordered_changes()) == ["style.css", "page.html"]

    def test_auto_detect_disabled(self):
        y = _change("y.js", "import x from './x';")
        x = _change("x.js", "export default 1;")
        resolver = DependencyResolver(auto_detect=False)
        resolver.rebuild([y, x])
        assert _names(resolver.get_ordered_changes()) == ["y.js", "x.js"]

    def test_non_pending_changes_excluded(self):
        done = _change("done.js")
        done.status = ChangeStatus.APPLIED
        resolver = DependencyResolver()
        resolver.rebuild([done, _change("todo.js")])
        assert _names(resolver.get_ordered_changes()) == ["todo.js"]
        assert len(resolver) == 1


class TestQueries:
    @pytest.fixture
    def resolver(self):
        resolver = DependencyResolver()
        resolver.rebuild([
            _change("y.js", "import x from './x';"),
            _change("x.js", "export default 1;"),
        ])
        return resolver

    def test_unmet_dependencies(self, resolver):
        y = resolver._pending[0]
        assert resolver.unmet_dependencies(y) == ["x.js"]
        assert resolver.unmet_dependencies(y, pending=[y]) == []

    def test_remove_drops_links(self, resolver):
        resolver.remove("x.js")
        assert "x.js" not in resolver.nodes
        assert resolver.nodes["y.js"].depends_on == set()
        assert _names(resolver.get_ordered_changes()) == ["y.js"]

    def test_remove_unknown_is_noop(self, resolver):
        resolver.remove("nope.js")
        assert len(resolver) == 2
