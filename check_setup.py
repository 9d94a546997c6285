"""
Production readiness check.

Scores four areas (AI, market data, blockchain, environment) from the
environment and prints an overall verdict with recommendations.

    python check_setup.py
"""

import os
from typing import Mapping

from dotenv import load_dotenv

NETWORKS = ('mainnet', 'testnet', 'devnet')
REQUIRED_VARS = ('MODULE_ADDRESS', 'APTOS_NETWORK')

# (ready, warning) score thresholds per section
THRESHOLDS = {
    'ai': (75, 50),
    'market_data': (70, 40),
    'blockchain': (80, 60),
    'environment': (80, 60),
}

PRODUCTION_READY = '🎉 PRODUCTION READY'
PARTIALLY_READY = '⚠️ PARTIALLY READY'
NOT_READY = '❌ NOT READY'


def _status(section: str, score: int) -> str:
    ready, warning = THRESHOLDS[section]
    if score >= ready:
        return 'ready'
    if score >= warning:
        return 'warning'
    return 'error'


def _section(name: str, score: int, details: list) -> dict:
    return {'score': score, 'status': _status(name, score), 'details': details}


def score_ai(env: Mapping) -> dict:
    details = []
    score = 0
    if env.get('GEMINI_API_KEY'):
        score += 50
        details.append('✅ Gemini API key configured')
    else:
        details.append('❌ No AI API key found')

    details.append(f"🎯 AI Model: {env.get('AI_MODEL') or 'gemini-2.0-flash'}")
    details.append(f"🔧 AI Provider: {env.get('AI_PROVIDER') or 'gemini'}")
    score += 50
    return _section('ai', score, details)


def score_market_data(env: Mapping) -> dict:
    details = []
    score = 0
    for var, label in (('COINMARKETCAP_API_KEY', 'CoinMarketCap'), ('COINGECKO_API_KEY', 'CoinGecko')):
        if env.get(var):
            score += 40
            details.append(f"✅ {label} API key configured")
        else:
            score += 10
            details.append(f"⚠️ {label} API key missing (optional)")

    details.append(f"✅ {(env.get('EXCHANGE_ID') or 'binance').title()} ticker stream via ccxt.pro ready")
    score += 20
    return _section('market_data', score, details)


def score_blockchain(env: Mapping) -> dict:
    details = []
    score = 0

    module_address = env.get('MODULE_ADDRESS') or ''
    if module_address.startswith('0x'):
        score += 30
        details.append(f"✅ Smart contract: {module_address[:20]}...")
    else:
        details.append('❌ Smart contract address missing')

    network = env.get('APTOS_NETWORK') or ''
    if network in NETWORKS:
        score += 20
        details.append(f"✅ Network: {network}")
    else:
        details.append('❌ Network configuration invalid')

    if env.get('APTOS_API_KEY'):
        score += 30
        details.append('✅ Aptos Build API key configured')
    else:
        score += 10
        details.append('⚠️ Aptos Build API key missing (recommended)')

    if env.get('TRADING_ENABLED') == 'true':
        score += 20
        details.append('✅ Trading enabled')
    else:
        score += 10
        details.append('⚠️ Trading disabled')

    return _section('blockchain', score, details)


def score_environment(env: Mapping) -> dict:
    details = []
    score = 0

    app_env = env.get('APP_ENV')
    if app_env == 'production':
        score += 40
        details.append('✅ Production environment')
    else:
        score += 20
        details.append(f"⚠️ Environment: {app_env or 'not set'} (development features enabled)")

    missing = [v for v in REQUIRED_VARS if not env.get(v)]
    if missing:
        details.append(f"❌ Missing required: {', '.join(missing)}")
    else:
        score += 40
        details.append('✅ All required environment variables set')

    details.append(
        f"🎯 Risk settings: Max position ${env.get('MAX_POSITION_SIZE') or '1000'}, "
        f"Risk {env.get('DEFAULT_RISK_PERCENT') or '2'}%"
    )
    score += 20
    return _section('environment', score, details)


def recommendations_for(env: Mapping) -> list:
    recs = []
    if not env.get('GEMINI_API_KEY'):
        recs.append('Add a Gemini API key for real AI strategy parsing')
        recs.append('Get key from: https://aistudio.google.com/app/apikey')
    if not env.get('COINMARKETCAP_API_KEY'):
        recs.append('Add CoinMarketCap API key for price verification')
        recs.append('Get key from: https://coinmarketcap.com/api/')
    if not env.get('APTOS_API_KEY'):
        recs.append('Add Aptos Build API key for better performance')
        recs.append('Get key from: https://build.aptos.dev')
    if env.get('APP_ENV') != 'production':
        recs.append('Set APP_ENV=production for full production features')
    if env.get('TRADING_ENABLED') != 'true':
        recs.append('Set TRADING_ENABLED=true to enable live trading')
    return recs


def score_readiness(env: Mapping) -> dict:
    """
    Pure readiness report for an environment mapping.

    Returns:
        {'sections': {name: {'score', 'status', 'details'}}, 'average_score',
         'ready_count', 'error_count', 'overall_status', 'recommendations'}
    """
    sections = {
        'ai': score_ai(env),
        'market_data': score_market_data(env),
        'blockchain': score_blockchain(env),
        'environment': score_environment(env),
    }
    scores = [s['score'] for s in sections.values()]
    average = int(sum(scores) / len(scores) + 0.5)
    ready_count = sum(1 for s in sections.values() if s['status'] == 'ready')
    error_count = sum(1 for s in sections.values() if s['status'] == 'error')

    if error_count == 0 and average >= 80:
        overall = PRODUCTION_READY
    elif error_count <= 1 and average >= 60:
        overall = PARTIALLY_READY
    else:
        overall = NOT_READY

    return {
        'sections': sections,
        'average_score': average,
        'ready_count': ready_count,
        'error_count': error_count,
        'overall_status': overall,
        'recommendations': recommendations_for(env),
    }


TITLES = {
    'ai': '🧠 AI INTEGRATION',
    'market_data': '📊 MARKET DATA',
    'blockchain': '⛓️  BLOCKCHAIN INTEGRATION',
    'environment': '🌍 ENVIRONMENT',
}


def print_report(report: dict):
    print("🔍 DeepTrade - Production Readiness Check")
    print("=" * 43)

    for name, section in report['sections'].items():
        print(f"\n{TITLES[name]}")
        print("-" * 25)
        for line in section['details']:
            print(line)
        print(f"Score: {section['score']}/100 ({section['status']})")

    total = len(report['sections'])
    print("\n🎯 OVERALL ASSESSMENT")
    print("=" * 21)
    print(f"Score: {report['average_score']}/100")
    print(f"Ready components: {report['ready_count']}/{total}")
    print(f"Components with errors: {report['error_count']}/{total}")
    print(f"\n{report['overall_status']}")

    if report['overall_status'] == PRODUCTION_READY:
        print("Fully configured and ready for live autonomous trading.")
    elif report['overall_status'] == PARTIALLY_READY:
        print("Functional, but some features may have limitations.")
    else:
        print("Please address the missing configurations above.")

    if report['recommendations']:
        print("\n💡 RECOMMENDATIONS:")
        for i, rec in enumerate(report['recommendations'], start=1):
            print(f"   {i}. {rec}")


if __name__ == "__main__":
    load_dotenv()
    print_report(score_readiness(os.environ))
