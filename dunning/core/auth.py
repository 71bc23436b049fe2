from fastapi import HTTPException, Request

from dunning.services.dunning_state_machine import SYSTEM_AUTHOR

MAX_OPERATOR_ID_LENGTH = 255


def get_operator(request: Request) -> str:
    """Identify the operator behind a request from the X-Operator-Id header.

    Requests without the header act as the system user.
    """
    operator = request.headers.get("X-Operator-Id", "").strip()
    if not operator:
        return SYSTEM_AUTHOR
    if len(operator) > MAX_OPERATOR_ID_LENGTH:
        raise HTTPException(status_code=400, detail="Invalid X-Operator-Id header")
    return operator
