from sqlalchemy import inspect

from db import engine


def list_tables(bind=engine):
    return sorted(inspect(bind).get_table_names())


def main():
    try:
        tables = list_tables()
    except Exception as e:
        raise SystemExit(f"Connection failed: {e}")
    print(f"Tables in {engine.url.render_as_string(hide_password=True)}:")
    for name in tables:
        print(f" - {name}")


if __name__ == "__main__":
    main()
