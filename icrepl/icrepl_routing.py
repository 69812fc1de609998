"""
Effective canister ids: which canister's subnet a request is routed to.

Calls to the management canister are routed by the canister they act on, taken
from the field of the argument record that names it.
"""
from typing import Optional

from icrepl.icrepl_values import ReplError, Principal, Record, PrincipalValue
from icrepl.icrepl_candid import decode_args

MANAGEMENT_CANISTER = Principal.management_canister()

# Management method -> argument record field naming the target canister
CANISTER_TARGETED_METHODS = {
    "install_code": "canister_id",
    "install_chunked_code": "target_canister",
    "update_settings": "canister_id",
    "start_canister": "canister_id",
    "stop_canister": "canister_id",
    "canister_status": "canister_id",
    "canister_info": "canister_id",
    "delete_canister": "canister_id",
    "deposit_cycles": "canister_id",
    "uninstall_code": "canister_id",
    "provisional_top_up_canister": "canister_id",
    "upload_chunk": "canister_id",
    "clear_chunk_store": "canister_id",
    "stored_chunks": "canister_id",
    "take_canister_snapshot": "canister_id",
    "load_canister_snapshot": "canister_id",
    "list_canister_snapshots": "canister_id",
    "delete_canister_snapshot": "canister_id",
    "fetch_canister_logs": "canister_id",
}


def get_effective_canister_id(canister_id: Principal, method: str, arg: bytes) -> Optional[Principal]:
    """
    The principal a call should be routed by; None means the configured
    default effective canister id.
    """
    if canister_id != MANAGEMENT_CANISTER:
        return canister_id
    field = CANISTER_TARGETED_METHODS.get(method)
    if field is None:
        return None
    values = decode_args(arg)
    if values and isinstance(values[0], Record):
        target = values[0].get(field)
        if isinstance(target, PrincipalValue):
            return target.principal
    raise ReplError(f"{method} expects a record with a {field} field")
