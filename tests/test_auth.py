"""
Admin login, password hashing and the admin CLI.
"""
from nisarg_store.auth import check_password, hash_password


class TestPasswords:
    def test_hash_is_salted(self) -> None:
        first = hash_password("correct horse")
        second = hash_password("correct horse")

        assert first != second
        assert check_password("correct horse", first)
        assert check_password("correct horse", second.decode("utf-8"))

    def test_wrong_password(self) -> None:
        assert not check_password("wrong", hash_password("correct horse"))

    def test_plain_text_rows_never_match(self) -> None:
        assert not check_password("correct horse", "correct horse")
        assert not check_password("correct horse", None)


class TestLogin:
    def test_admin_login_and_check(self, app, client, mongo_db) -> None:
        mongo_db.users.insert_one(
            {"email": "admin@example.com", "password_hash": hash_password("s3cret-pass"), "is_admin": True}
        )

        response = client.post(
            "/api/auth/login", json={"email": " Admin@Example.com ", "password": "s3cret-pass"}
        )
        assert response.status_code == 200
        body = response.get_json()
        assert body["isAdmin"] is True

        check = client.get(
            "/api/auth/check-admin", headers={"Authorization": f"Bearer {body['token']}"}
        )
        assert check.get_json() == {"isAdmin": True, "email": "admin@example.com"}

    def test_bad_credentials(self, client, mongo_db) -> None:
        mongo_db.users.insert_one(
            {"email": "admin@example.com", "password_hash": hash_password("s3cret-pass"), "is_admin": True}
        )
        response = client.post(
            "/api/auth/login", json={"email": "admin@example.com", "password": "guess"}
        )
        assert response.status_code == 401

    def test_missing_fields(self, client) -> None:
        response = client.post("/api/auth/login", json={"email": "admin@example.com"})
        assert response.status_code == 400


class TestCli:
    def test_create_admin(self, app, mongo_db) -> None:
        runner = app.test_cli_runner()

        result = runner.invoke(
            args=["create-admin", "Owner@Example.com"], input="long-password\nlong-password\n"
        )

        assert result.exit_code == 0, result.output
        user = mongo_db.users.find_one({"email": "owner@example.com"})
        assert user["is_admin"] is True
        assert check_password("long-password", user["password_hash"])

    def test_create_admin_rejects_short_password(self, app, mongo_db) -> None:
        runner = app.test_cli_runner()

        result = runner.invoke(args=["create-admin", "owner@example.com"], input="short\nshort\n")

        assert result.exit_code != 0
        assert mongo_db.users.find_one({"email": "owner@example.com"}) is None
