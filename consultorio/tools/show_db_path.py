from __future__ import annotations

from sqlalchemy import inspect

from consultorio.db import engine


def main() -> None:
    print("ENGINE URL:", engine.url.render_as_string(hide_password=True))
    print("DB FILE   :", engine.url.database)
    print("TABELLE   :", ", ".join(sorted(inspect(engine).get_table_names())) or "-")


if __name__ == "__main__":
    main()
