import contextlib
import hashlib
import io
import tempfile
import unittest
from pathlib import Path

from compile_script import (
    Stage,
    assemble_fake_script,
    assemble_script,
    build_fake_script,
    build_script,
    build_seed_script,
    check_compiled,
    script_blocks,
    compile_directory,
    compile_migrations,
)
from pgm_common import PgmFilesystemError


TREE = {
    "migrations/00000.sql": "CREATE TABLE account (id integer PRIMARY KEY);\n",
    "migrations/00002.sql": "ALTER TABLE account ADD COLUMN email text;\n",
    "migrations/00001.sql": "ALTER TABLE account ADD COLUMN name text;\n",
    "migrations/README.md": "not a migration\n",
    "functions/add_one.sql": (
        "CREATE OR REPLACE FUNCTION add_one(i integer) RETURNS integer AS $$\n"
        "    SELECT i + 1\n"
        "$$ LANGUAGE sql;\n"
    ),
    "functions/a_first.sql": (
        "-- uses add_one before it exists\n"
        "CREATE OR REPLACE FUNCTION a_first() RETURNS integer AS $$\n"
        "BEGIN\n"
        "\n"
        "    RETURN add_one(1);\n"
        "END;\n"
        "$$ LANGUAGE plpgsql;\n"
    ),
    "triggers/touch.sql": (
        "CREATE OR REPLACE FUNCTION touch() RETURNS trigger AS $$\n"
        "BEGIN\n"
        "    RETURN NEW;\n"
        "END;\n"
        "$$ LANGUAGE plpgsql;\n"
    ),
    "views/account_names.sql": "CREATE OR REPLACE VIEW account_names AS SELECT name FROM account;\n",
}


def make_tree(root: Path, files: dict[str, str]) -> None:
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")


def md5(text: str) -> str:
    return hashlib.md5(text.encode("utf-8")).hexdigest()


def code_lines(sql: str) -> list[str]:
    return [line for line in sql.splitlines() if not line.startswith("--")]


class TestCompileScript(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.root = Path(self._td.name) / "postgres"
        make_tree(self.root, TREE)

    def tearDown(self) -> None:
        self._td.cleanup()

    def test_fragments_follow_stage_order(self) -> None:
        builder = assemble_script(self.root)
        self.assertEqual(
            builder.sources(),
            [
                "migrations/00000.sql",
                "functions/a_first",
                "functions/add_one",
                "triggers/touch",
                "migrations/00001.sql",
                "migrations/00002.sql",
                "views/account_names",
                "functions/a_first",
                "functions/add_one",
                "triggers/touch",
            ],
        )

    def test_script_layout(self) -> None:
        sql = build_script(self.root)
        self.assertTrue(sql.startswith("DO $pgm$ BEGIN\nSET LOCAL check_function_bodies = false;\n"))
        self.assertTrue(sql.endswith("END $pgm$;\n"))

        positions = [
            sql.index("SET LOCAL check_function_bodies = false;"),
            sql.index("CREATE TABLE IF NOT EXISTS pgm_migration"),
            sql.index("CREATE TABLE IF NOT EXISTS pgm_view"),
            sql.index("-- RUN migrations/00000.sql --"),
            sql.index("-- RUN functions/add_one --"),
            sql.index("-- RUN migrations/00001.sql --"),
            sql.index("-- RUN views/account_names --"),
            sql.index("SET LOCAL check_function_bodies = true;"),
            sql.rindex("-- RUN functions/add_one --"),
            sql.rindex("-- RUN triggers/touch --"),
        ]
        self.assertEqual(positions, sorted(positions))

    def test_non_sql_files_are_ignored(self) -> None:
        self.assertNotIn("README", build_script(self.root))

    def test_function_guard_uses_file_hash(self) -> None:
        sql = build_script(self.root)
        guard = (
            "IF (SELECT hash FROM pgm_function WHERE name = 'add_one') "
            f"IS DISTINCT FROM '{md5(TREE['functions/add_one.sql'])}' THEN"
        )
        self.assertEqual(sql.count(guard), 2)
        self.assertEqual(sql.count("SELECT i + 1"), 2)

    def test_only_second_pass_records_hashes(self) -> None:
        builder = assemble_script(self.root)
        first = [f for f in builder.fragments if f.stage == Stage.FUNCTIONS_UNCHECKED]
        second = [f for f in builder.fragments if f.stage == Stage.FUNCTIONS_CHECKED]
        self.assertTrue(all(not f.on_apply and not f.on_skip for f in first))
        for fragment in second:
            self.assertTrue(fragment.on_apply[0].startswith("INSERT INTO pgm_function (name, hash) VALUES"))
            self.assertEqual(fragment.on_apply[1], f"RAISE NOTICE 'Applied {fragment.source}';")
            self.assertEqual(fragment.on_skip, [f"RAISE NOTICE 'Skipped {fragment.source} (no changes)';"])

    def test_recorded_hash_matches_guard(self) -> None:
        builder = assemble_script(self.root)
        for fragment in builder.fragments:
            if not fragment.on_skip or "hash" not in (fragment.guard or ""):
                continue
            recorded = fragment.on_apply[0].split("VALUES (", 1)[1].split(")", 1)[0].split(", ")[1]
            self.assertTrue(fragment.guard.endswith(f"IS DISTINCT FROM {recorded}"), fragment.source)

    def test_views_compile_once(self) -> None:
        sql = build_script(self.root)
        self.assertEqual(sql.count("-- RUN views/account_names --"), 1)
        self.assertIn(
            "INSERT INTO pgm_view (name, hash) VALUES "
            f"('account_names', '{md5(TREE['views/account_names.sql'])}') "
            "ON CONFLICT (name) DO UPDATE SET hash = EXCLUDED.hash, applied_at = CURRENT_TIMESTAMP;",
            sql,
        )

    def test_changing_one_byte_changes_guard(self) -> None:
        before = build_script(self.root)
        view = self.root / "views" / "account_names.sql"
        view.write_text(TREE["views/account_names.sql"].replace("name FROM", "name  FROM"), encoding="utf-8")
        after = build_script(self.root)

        self.assertNotIn(md5(TREE["views/account_names.sql"]), after)
        self.assertIn(md5(view.read_text(encoding="utf-8")), after)
        self.assertIn(f"'{md5(TREE['functions/add_one.sql'])}'", before)
        self.assertIn(f"'{md5(TREE['functions/add_one.sql'])}'", after)

    def test_migration_guard_ignores_content(self) -> None:
        guard = "IF NOT EXISTS (SELECT 1 FROM pgm_migration WHERE name = '00001') THEN"
        self.assertIn(guard, build_script(self.root))
        (self.root / "migrations" / "00001.sql").write_text("SELECT 42;\n", encoding="utf-8")
        self.assertIn(guard, build_script(self.root))

    def test_migrations_sorted_without_bootstrap(self) -> None:
        fragments = compile_migrations(self.root)
        self.assertEqual([f.source for f in fragments], ["migrations/00001.sql", "migrations/00002.sql"])
        self.assertEqual(
            fragments[0].on_apply,
            [
                "INSERT INTO pgm_migration (name) VALUES ('00001');",
                "RAISE NOTICE 'Applied migration 00001';",
            ],
        )

    def test_bootstrap_is_existence_gated(self) -> None:
        sql = build_script(self.root)
        self.assertIn("IF NOT EXISTS (SELECT 1 FROM pgm_migration WHERE name = '00000') THEN", sql)

    def test_output_is_independent_of_creation_order(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            other = Path(td) / "postgres"
            make_tree(other, dict(reversed(list(TREE.items()))))
            self.assertEqual(build_script(other), build_script(self.root))

    def test_blank_lines_always_removed(self) -> None:
        for minify in (False, True):
            sql = build_script(self.root, minify=minify)
            self.assertNotIn("\n\n", sql)

    def test_minify_strips_comment_lines(self) -> None:
        plain = build_script(self.root)
        minified = build_script(self.root, minify=True)
        self.assertIn("-- uses add_one before it exists", plain)
        self.assertFalse(any(line.startswith("--") for line in minified.splitlines()))
        self.assertEqual(code_lines(plain), minified.splitlines())

    def test_missing_category_folders_are_skipped(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            make_tree(root, {"migrations/00001.sql": "SELECT 1;\n"})
            builder = assemble_script(root)
            self.assertEqual(builder.sources(), ["migrations/00001.sql"])

    def test_missing_root_is_reported(self) -> None:
        with self.assertRaises(PgmFilesystemError) as ctx:
            build_script(self.root.parent / "missing")
        self.assertIn("Have you run 'pgm init'?", str(ctx.exception))

    def test_non_utf8_file_aborts(self) -> None:
        (self.root / "triggers" / "bad.sql").write_bytes(b"\xff\xfe CREATE")
        with self.assertRaises(PgmFilesystemError):
            build_script(self.root)

    def test_unusable_file_name_aborts(self) -> None:
        (self.root / "views" / "o'clock.sql").write_text("SELECT 1;\n", encoding="utf-8")
        with self.assertRaises(PgmFilesystemError):
            compile_directory(self.root / "views", "pgm_view", True, Stage.VIEWS)

    def test_notice_escapes_percent(self) -> None:
        (self.root / "views" / "pct_100%.sql").write_text("SELECT 1;\n", encoding="utf-8")
        sql = build_script(self.root)
        self.assertIn("RAISE NOTICE 'Applied views/pct_100%%';", sql)
        self.assertIn("WHERE name = 'pct_100%')", sql)


class TestFakeScript(unittest.TestCase):
    def test_records_every_artifact_without_bodies(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            make_tree(root, TREE)
            sql = build_fake_script(root)
            builder = assemble_fake_script(root)

        lines = code_lines(sql)
        self.assertFalse(any(line.startswith("IF ") for line in lines))

        for name in ["00000", "00001", "00002"]:
            self.assertIn(f"INSERT INTO pgm_migration (name) VALUES ('{name}') ON CONFLICT (name) DO NOTHING;", lines)
        for rel, table in [
            ("functions/add_one.sql", "pgm_function"),
            ("functions/a_first.sql", "pgm_function"),
            ("triggers/touch.sql", "pgm_trigger"),
            ("views/account_names.sql", "pgm_view"),
        ]:
            name = Path(rel).stem
            self.assertIn(f"INSERT INTO {table} (name, hash) VALUES ('{name}', '{md5(TREE[rel])}')", sql)

        body_lines = {line for content in TREE.values() for line in content.splitlines() if line.strip()}
        self.assertEqual(body_lines & set(lines), set())
        self.assertEqual(builder.sources()[:3], ["migrations/00000.sql", "migrations/00001.sql", "migrations/00002.sql"])


class TestSeedScript(unittest.TestCase):
    def test_seeds_run_in_order_without_guards(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            make_tree(
                root,
                {
                    "seeds/00002.sql": "INSERT INTO account VALUES (2);\n",
                    "seeds/00001.sql": "INSERT INTO account VALUES (1);\n",
                },
            )
            sql = build_seed_script(root)

        self.assertTrue(sql.startswith("DO $pgm_seed$ BEGIN\nSET LOCAL client_min_messages = notice;\n"))
        self.assertTrue(sql.endswith("END $pgm_seed$;\n"))
        self.assertLess(sql.index("VALUES (1)"), sql.index("VALUES (2)"))
        self.assertIn("RAISE NOTICE 'Applied seed 00001';", sql)
        self.assertNotIn("IF ", sql)

    def test_missing_seeds_folder(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(PgmFilesystemError):
                build_seed_script(Path(td))


class TestCheckCompiled(unittest.TestCase):
    def test_reports_drift(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "compiled.sql"
            path.write_text("SELECT 1;\n", encoding="utf-8")
            self.assertTrue(check_compiled(path, "SELECT 1;\n"))

            err = io.StringIO()
            with contextlib.redirect_stderr(err):
                self.assertFalse(check_compiled(path, "SELECT 2;\n"))
                self.assertFalse(check_compiled(Path(td) / "missing.sql", ""))
        self.assertIn("drift detected", err.getvalue())
        self.assertIn("+SELECT 2;", err.getvalue())
        self.assertIn("missing file", err.getvalue())

    def test_names_drifted_artifacts(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td) / "postgres"
            make_tree(root, TREE)
            path = Path(td) / "compiled.sql"
            path.write_text(build_script(root), encoding="utf-8")

            (root / "functions" / "add_one.sql").write_text(
                "CREATE OR REPLACE FUNCTION add_one(i integer) RETURNS integer AS $$ SELECT i + 2 $$ LANGUAGE sql;\n",
                encoding="utf-8",
            )
            (root / "views" / "account_names.sql").unlink()
            (root / "migrations" / "00003.sql").write_text("SELECT 3;\n", encoding="utf-8")

            err = io.StringIO()
            with contextlib.redirect_stderr(err):
                self.assertFalse(check_compiled(path, build_script(root)))
        lines = err.getvalue().splitlines()
        self.assertIn("[check] changed: functions/add_one", lines)
        self.assertIn("[check] added: migrations/00003.sql", lines)
        self.assertIn("[check] removed: views/account_names", lines)
        self.assertFalse(any("a_first" in line for line in lines if line.startswith("[check]")))

    def test_script_blocks_merge_both_passes(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td) / "postgres"
            make_tree(root, TREE)
            blocks = script_blocks(build_script(root))
            minified = script_blocks(build_script(root, minify=True))
        self.assertEqual(sum(1 for line in blocks["functions/add_one"] if "SELECT i + 1" in line), 2)
        self.assertEqual(minified, {})


if __name__ == "__main__":
    unittest.main()
