import asyncio
import logging
import sys

from arcanum import AsyncioScheduler, GeminiNarrator, ReadingSession, SessionConfig, SessionState, Signal


async def demo(question: str, spread: str = "three_card") -> None:
    """Run one full session in the terminal: shuffle, draw each card, stream the reading."""
    finished = asyncio.Event()
    printed = 0
    config = SessionConfig.from_env()

    def on_signal(session: ReadingSession, signal: Signal) -> None:
        nonlocal printed
        if signal is Signal.STATE_CHANGED:
            print(f"\n== {session.state.value} ==")
        elif signal is Signal.CARD_DRAWN:
            index = len(session.drawn_cards) - 1
            card = session.drawn_cards[index]
            print(f"  {session.spread.positions[index].name}: {card.name} ({card.orientation})")
        elif signal is Signal.CHUNK:
            print(session.reading_text[printed:], end="", flush=True)
            printed = len(session.reading_text)
        elif signal is Signal.READING_FINISHED:
            finished.set()

    session = ReadingSession(AsyncioScheduler(), GeminiNarrator(), config=config)
    session.subscribe(on_signal)

    session.start_selection()
    if not session.submit(question, spread):
        print("A question is required.")
        return

    # Deal each card once the shuffle has settled
    while session.state is not SessionState.DRAWING:
        await asyncio.sleep(0.1)
    while session.draw_next_card() is not None:
        await asyncio.sleep(0.3)

    await finished.wait()
    if session.notice:
        print(f"\n\n{session.notice}")
    print()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    # Example: past/present/future spread
    q = " ".join(sys.argv[1:]) or "Should I change my career?"
    asyncio.run(demo(q))
