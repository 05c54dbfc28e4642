import hashlib


def format_deposit_address(sidechain_number: int, address: str) -> str:
    """
    Encode a sidechain address so the mainchain can route a deposit to it.

    The encoding is ``s<slot>_<address>_<checksum>`` where the checksum is the
    first six hex digits of the SHA-256 of everything before it.

    Args:
        sidechain_number (int): Slot of the receiving sidechain.
        address (str): Address on the receiving sidechain.

    Returns:
        str: The deposit address.
    """
    deposit_address = f"s{sidechain_number}_{address}_"
    checksum = hashlib.sha256(deposit_address.encode()).hexdigest()[:6]
    return f"{deposit_address}{checksum}"
