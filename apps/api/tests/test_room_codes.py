from watchparty.services import room_codes

ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


def test_generated_codes_use_unambiguous_alphabet() -> None:
    for _ in range(200):
        code = room_codes.generate_room_code()
        assert len(code) == 6
        assert set(code) <= set(ALPHABET)
        assert not set(code) & set("01IO")


def test_generate_honours_overrides() -> None:
    assert room_codes.generate_room_code(length=3, alphabet="X") == "XXX"


def test_peer_address_is_case_insensitive() -> None:
    assert room_codes.derive_peer_address("b7k4xq") == "bynge-B7K4XQ"
    assert room_codes.derive_peer_address(" B7K4XQ ") == "bynge-B7K4XQ"
    assert room_codes.derive_peer_address("abc", prefix="") == "ABC"


def test_is_valid_room_code() -> None:
    assert room_codes.is_valid_room_code("b7k4xq")
    assert not room_codes.is_valid_room_code("B7K4X")
    assert not room_codes.is_valid_room_code("B7K4X0")
