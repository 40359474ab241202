""" Simulate users clicking on things: a producer thread posts click
    records to nsqd over HTTP at random intervals, and after a short delay
    a consumer starts reading them off a channel. Clicks published before
    the consumer starts wait in nsqd, which is the point of the exercise.

    Expects nsqd on the local host with its default ports; set
    EVENTFUL_ENDPOINTS (or EVENTFUL_DISCOVERY_ENDPOINTS) to point elsewhere.
"""

import logging
import random
import string
import threading
import time

import eventful
import eventful.http


class Clicked(eventful.Record):
    topic = 'click'

    user_id: int
    clicked_on: str


def simulate_clicks(host, stop):

    while not stop.is_set():
        stop.wait(random.uniform(0.3, 1.2))

        for ignored in range(random.randint(1, 3)):
            user_id = random.randrange(1000)
            clicked_on = ''.join(random.choices(string.ascii_letters + string.digits, k=16))

            click = Clicked(user_id, clicked_on)
            print("PRODUCE: user_id=%d clicked_on='%s'" % (click.user_id, click.clicked_on))
            eventful.http.post_event(host, click)


def consume(record, message):
    print("    CONSUME: user_id=%d clicked_on='%s'" % (record.user_id, record.clicked_on))


def main():

    logging.basicConfig(level=logging.WARNING, format='%(asctime)s %(name)s %(levelname)s: %(message)s')

    config = eventful.Configuration.load()
    if not config.endpoints and not config.discovery_endpoints:
        config.update({'endpoints': '127.0.0.1:4150'})

    stop = threading.Event()
    producer = threading.Thread(target=simulate_clicks, args=('127.0.0.1:4151', stop), daemon=True)
    producer.start()

    # Let some clicks pile up before anyone is listening.
    time.sleep(2)

    with eventful.Bus(config) as bus:
        bus.consume(Clicked, 'some_channel', consume)

        try:
            while True:
                time.sleep(1)
        except KeyboardInterrupt:
            pass
        finally:
            stop.set()


if __name__ == '__main__':
    main()


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
