import os, sys, asyncio
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
from flask import Flask
from config import Config
from utils.errors import GatewayError
from utils.mpesa import MpesaClient, build_conversation_id, build_transaction_reference, normalize_msisdn


def main():
    # Stub mode unless MPESA_STUB=0 and real sandbox credentials are configured
    os.environ.setdefault('MPESA_STUB', '1')
    Config.MPESA_STUB = os.environ['MPESA_STUB'] not in ('0', 'false', 'no')
    app = Flask(__name__)
    app.config.from_object(Config)
    with app.app_context():
        client = MpesaClient.from_app()
        msisdn = normalize_msisdn(os.environ.get('DEMO_MSISDN', '0812345678'), app.config['MPESA_MSISDN_PREFIX'])
        ref = build_transaction_reference('demo-student-0001')
        conv = build_conversation_id('demo-parent-0000000001')
        try:
            res = asyncio.run(client.initiate_collection(msisdn, 10, ref, 'Sandbox Test', conv))
            print('OK' if res.success else 'REJECTED', res.to_dict())
        except GatewayError as e:
            print('ERR', e.message)


if __name__ == '__main__':
    main()
