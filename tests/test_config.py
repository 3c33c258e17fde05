from custody.core.config import parse_account_ids, parse_cors_origins


def test_parse_cors_origins_csv():
    value = "http://localhost:5173, http://localhost:3000"
    assert parse_cors_origins(value) == [
        "http://localhost:5173",
        "http://localhost:3000",
    ]


def test_parse_cors_origins_json_list():
    value = '["http://localhost:5173", "https://custody.example.com"]'
    assert parse_cors_origins(value) == [
        "http://localhost:5173",
        "https://custody.example.com",
    ]


def test_parse_cors_origins_deduplicates():
    value = "http://localhost:5173,http://localhost:5173"
    assert parse_cors_origins(value) == ["http://localhost:5173"]


def test_parse_account_ids():
    assert parse_account_ids("-1, 42,,42 ") == [-1, 42]
    assert parse_account_ids("") == []
    assert parse_account_ids(None) == []
