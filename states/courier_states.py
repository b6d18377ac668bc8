from aiogram.fsm.state import State, StatesGroup

class CourierState(StatesGroup):
    awaiting_location = State() # Нажато «Выполнено», ждём геолокацию для подтверждения доставки

    # Store pending request details in state
    # order_id: int
    # requested_at: str - ISO UTC, для проверки TTL
    # prompt_message_id: int | None - сообщение с кнопкой «Поделиться местоположением»
