"""Example: prepared statements with sqlitewrap.

Uses the system SQLite library; point SQLITEWRAP_NATIVE_LIB at a specific
build if needed:
    SQLITEWRAP_NATIVE_LIB=/path/to/libsqlite3.so python example.py
"""

import sqlitewrap


def main():
    # Must run before the first connection is opened to take effect.
    err = sqlitewrap.configure_serialized()
    if err is not None:
        print(f"serialized mode unavailable: {err}")

    with sqlitewrap.Connection(":memory:") as conn:
        # Create a table.
        conn.exec("""
            CREATE TABLE users (
                id    INTEGER PRIMARY KEY,
                name  TEXT NOT NULL,
                email TEXT UNIQUE
            )
        """)

        # Insert rows, reusing one prepared statement.
        users = [
            ("Alice", "alice@example.com"),
            ("Bob", "bob@example.com"),
            ("Carol", "carol@example.com"),
        ]
        with conn.prepare("INSERT INTO users (name, email) VALUES (:name, :email)", persistent=True) as insert:
            for name, email in users:
                insert.bind(":name", name)
                insert.bind(":email", email)
                insert.step()
                insert.reuse()

        # Query all users.
        with conn.prepare("SELECT id, name, email FROM users ORDER BY id") as select:
            print("All users:")
            while select.step():
                print(f"  id={int(select['id'])}  name={select['name']}  email={select['email']}")

        # Lookup by positional parameter.
        with conn.prepare("SELECT name FROM users WHERE email = ?") as lookup:
            lookup.bind_all("bob@example.com")
            if lookup.step():
                print(f"\nFound: {lookup.get_string(0)}")

        # Constraint violations surface as classified errors.
        try:
            conn.exec("INSERT INTO users (name, email) VALUES ('Dup', 'bob@example.com')")
        except sqlitewrap.BusyError:
            print("database busy, try again later")
        except sqlitewrap.Error as e:
            print(f"\nInsert failed: {e}")


if __name__ == "__main__":
    main()
