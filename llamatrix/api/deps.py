from fastapi import Request

from llamatrix.services.supervisor import RoomSessionSupervisor


def get_supervisor(request: Request) -> RoomSessionSupervisor:
    return request.app.state.supervisor
