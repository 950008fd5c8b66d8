"""
End-to-end scenarios over the HTTP API.

Scenarios:
  A: Happy Path, offer to completion
  B: Buyer cancels before funding
  C: Verifier cancels a funded job
  D: Duplicate start / deliver, exactly one wins; a stale reader loses
  E: Offers from two buyers share one agent
  F: Revoked token blocks the agent
"""
import os
import unittest
from unittest.mock import MagicMock

# Force DEV_MODE and test DB before importing app
os.environ['DEV_MODE'] = 'true'
os.environ['DATABASE_URL'] = 'sqlite://'  # in-memory

from server import app
from models import db, Agent, Job, Offer
from services.profile_service import Profile, ProfileLookupResult


def _login(client, username, twitter_handle=None):
    """Helper: sign the client's session in via dev login. Returns the user id."""
    payload = {'username': username}
    if twitter_handle:
        payload['twitter_handle'] = twitter_handle
    resp = client.post('/auth/dev-login', json=payload)
    return resp.get_json()['id']


def _issue_token(client, name='agent'):
    return client.post('/tokens', json={'name': name}).get_json()['token']


def _auth_headers(token):
    return {'Authorization': f'Bearer {token}'}


class _RelayScenario(unittest.TestCase):
    """Fresh in-memory DB, a mocked profile lookup and a configured verifier."""

    def setUp(self):
        app.config['TESTING'] = True
        app.config['SQLALCHEMY_DATABASE_URI'] = 'sqlite://'
        import services.profile_service as ps_mod
        self.profiles = MagicMock()
        self.profiles.lookup_by_handle.return_value = ProfileLookupResult.found(
            Profile(display_name='New Agent', bio='Writes tweets',
                    avatar_url='https://img.example/n.png', external_id='4242')
        )
        ps_mod._profile_service = self.profiles
        self.ctx = app.app_context()
        self.ctx.push()
        db.create_all()
        self.client = app.test_client()
        from services.rate_limiter import get_write_limiter
        get_write_limiter().reset()

        c = self.client
        self.verifier_id = _login(c, 'verifier')
        app.config['VERIFIER_USER_ID'] = self.verifier_id
        self.verifier_token = _issue_token(c, 'verifier')

    def tearDown(self):
        import services.profile_service as ps_mod
        ps_mod._profile_service = None
        app.config['VERIFIER_USER_ID'] = ''
        db.session.remove()
        db.drop_all()
        self.ctx.pop()

    def _create_offer(self, buyer='buyer1', handle='newagent', amount=100):
        _login(self.client, buyer)
        resp = self.client.post(f'/agents/{handle}/offers', json={
            'amount': amount, 'currency': 'SOL', 'description': 'write a tweet',
        })
        self.assertEqual(resp.status_code, 200)
        return resp.get_json()

    def _onboard_seller(self, username='seller_user', handle='newagent'):
        """Seller signs in with the matching handle, claims the agent and takes a token."""
        c = self.client
        _login(c, username, twitter_handle=handle)
        resp = c.post('/agents/claim')
        self.assertEqual(resp.status_code, 200)
        return _issue_token(c)

    def _job(self, job_id):
        db.session.expire_all()
        return db.session.get(Job, job_id)


# ===================================================================
# Scenario A: Happy Path
# ===================================================================

class TestScenarioA_HappyPath(_RelayScenario):
    """
    Scenario A: Buyer offers to an unknown handle -> agent auto-created ->
    seller claims -> verifier funds -> seller starts and delivers ->
    verifier completes. Offer status mirrors every step.
    """

    def test_full_lifecycle(self):
        c = self.client
        created = self._create_offer()
        job_id = created['job_id']

        agent = db.session.get(Agent, created['agent_id'])
        self.assertEqual(agent.handle, 'newagent')
        self.assertIsNone(agent.linked_user_id)

        seller_token = self._onboard_seller()
        verifier = _auth_headers(self.verifier_token)
        seller = _auth_headers(seller_token)

        resp = c.put(f'/jobs/{job_id}/fund', headers=verifier)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json()['status'], 'funded')

        resp = c.put(f'/jobs/{job_id}/start', headers=seller)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json()['status'], 'started')

        resp = c.put(f'/jobs/{job_id}/deliver', json={'delivered_url': 'https://x.com/newagent/status/1'},
                     headers=seller)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json()['job']['status'], 'delivered')

        resp = c.put(f'/jobs/{job_id}/complete', headers=verifier)
        self.assertEqual(resp.status_code, 200)
        data = resp.get_json()
        self.assertEqual(data['status'], 'completed')
        for stamp in ('funded_at', 'started_at', 'delivered_at', 'completed_at'):
            self.assertIsNotNone(data[stamp], stamp)
        self.assertIsNone(data['cancelled_at'])
        self.assertEqual(data['delivered_url'], 'https://x.com/newagent/status/1')

        job = self._job(job_id)
        self.assertTrue(job.funded_at <= job.started_at <= job.delivered_at <= job.completed_at)
        self.assertEqual(db.session.get(Offer, created['offer_id']).status, 'completed')

        # Terminal: nothing further is accepted
        resp = c.put(f'/jobs/{job_id}/cancel', headers=verifier)
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.get_json()['error'], 'Job is already completed.')
        self.assertEqual(c.put(f'/jobs/{job_id}/complete', headers=verifier).status_code, 400)

        # Public listing reflects the outcome
        resp = c.get('/jobs?status=completed')
        self.assertEqual(resp.get_json()['pagination']['total'], 1)


# ===================================================================
# Scenario B: Buyer cancels before funding
# ===================================================================

class TestScenarioB_BuyerCancel(_RelayScenario):
    """
    Scenario B: Buyer creates offer -> cancels while 'created' ->
    fund and start are refused afterwards.
    """

    def test_buyer_cancel_then_no_progress(self):
        c = self.client
        created = self._create_offer()
        job_id = created['job_id']

        resp = c.put(f'/jobs/{job_id}/cancel')
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json()['status'], 'cancelled')
        self.assertIsNotNone(resp.get_json()['cancelled_at'])

        seller_token = self._onboard_seller()
        resp = c.put(f'/jobs/{job_id}/fund', headers=_auth_headers(self.verifier_token))
        self.assertEqual(resp.status_code, 400)
        resp = c.put(f'/jobs/{job_id}/start', headers=_auth_headers(seller_token))
        self.assertEqual(resp.status_code, 400)

        job = self._job(job_id)
        self.assertEqual(job.status, 'cancelled')
        self.assertIsNone(job.funded_at)


# ===================================================================
# Scenario C: Verifier cancels a funded job
# ===================================================================

class TestScenarioC_VerifierCancel(_RelayScenario):
    """
    Scenario C: Job funded -> buyer can no longer cancel ->
    verifier cancels -> offer mirrors 'cancelled'.
    """

    def test_verifier_cancels_funded_job(self):
        c = self.client
        created = self._create_offer()
        job_id = created['job_id']
        c.put(f'/jobs/{job_id}/fund', headers=_auth_headers(self.verifier_token))

        _login(c, 'buyer1')
        resp = c.put(f'/jobs/{job_id}/cancel')
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.get_json()['error'], 'Job is not in created state.')

        resp = c.put(f'/jobs/{job_id}/cancel', headers=_auth_headers(self.verifier_token))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json()['status'], 'cancelled')
        self.assertEqual(db.session.get(Offer, created['offer_id']).status, 'cancelled')


# ===================================================================
# Scenario D: Duplicate transitions
# ===================================================================

class TestScenarioD_DuplicateTransitions(_RelayScenario):
    """
    Scenario D: Seller holds two tokens -> both start the same funded job ->
    exactly one succeeds; same for deliver.
    """

    def test_only_one_start_and_deliver_wins(self):
        c = self.client
        created = self._create_offer()
        job_id = created['job_id']
        token_a = self._onboard_seller()
        token_b = _issue_token(c, 'second-device')
        c.put(f'/jobs/{job_id}/fund', headers=_auth_headers(self.verifier_token))

        codes = sorted(
            c.put(f'/jobs/{job_id}/start', headers=_auth_headers(t)).status_code
            for t in (token_a, token_b)
        )
        self.assertEqual(codes, [200, 400])
        started_at = self._job(job_id).started_at

        codes = sorted(
            c.put(f'/jobs/{job_id}/deliver', json={'delivered_url': f'https://example.com/{i}'},
                  headers=_auth_headers(t)).status_code
            for i, t in enumerate((token_a, token_b))
        )
        self.assertEqual(codes, [200, 400])

        job = self._job(job_id)
        self.assertEqual(job.status, 'delivered')
        self.assertEqual(job.delivered_url, 'https://example.com/0')
        self.assertEqual(job.started_at, started_at)

    def test_start_loses_to_unseen_competing_commit(self):
        """Another worker starts the job on its own connection while this process still holds it as funded."""
        c = self.client
        created = self._create_offer()
        job_id = created['job_id']
        seller_token = self._onboard_seller()
        c.put(f'/jobs/{job_id}/fund', headers=_auth_headers(self.verifier_token))

        held = db.session.get(Job, job_id)
        self.assertEqual(held.status, 'funded')
        jobs = Job.__table__
        with db.engine.begin() as conn:
            conn.execute(jobs.update().where(jobs.c.id == job_id).values(status='started'))
        self.assertEqual(held.status, 'funded')

        resp = c.put(f'/jobs/{job_id}/start', headers=_auth_headers(seller_token))
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.get_json()['error'], 'Job is not in funded state.')
        self.assertIsNone(self._job(job_id).started_at)


# ===================================================================
# Scenario E: Shared agent resolution
# ===================================================================

class TestScenarioE_SharedAgent(_RelayScenario):
    """
    Scenario E: Two buyers offer to the same handle in different spellings ->
    one agent row, one profile lookup, two independent jobs.
    """

    def test_two_offers_resolve_one_agent(self):
        first = self._create_offer(buyer='buyer1', handle='NewAgent', amount=10)
        second = self._create_offer(buyer='buyer2', handle='newagent', amount=25)

        self.assertEqual(first['agent_id'], second['agent_id'])
        self.assertNotEqual(first['job_id'], second['job_id'])
        self.assertEqual(Agent.query.count(), 1)
        self.profiles.lookup_by_handle.assert_called_once_with('newagent')

        resp = self.client.get(f"/jobs?seller_id={first['agent_id']}")
        self.assertEqual(resp.get_json()['pagination']['total'], 2)

        # Each buyer only sees their own offer by default
        resp = self.client.get('/offers')
        offers = resp.get_json()['offers']
        self.assertEqual([o['id'] for o in offers], [second['offer_id']])


# ===================================================================
# Scenario F: Token revocation
# ===================================================================

class TestScenarioF_TokenRevocation(_RelayScenario):
    """
    Scenario F: Seller revokes the token in use -> start refused with 401 ->
    a freshly issued token works.
    """

    def test_revoked_token_blocks_agent(self):
        c = self.client
        created = self._create_offer()
        job_id = created['job_id']
        old_token = self._onboard_seller()
        c.put(f'/jobs/{job_id}/fund', headers=_auth_headers(self.verifier_token))

        _login(c, 'seller_user', twitter_handle='newagent')
        token_id = c.get('/tokens').get_json()[0]['id']
        self.assertEqual(c.post(f'/tokens/{token_id}/revoke').status_code, 200)

        resp = c.put(f'/jobs/{job_id}/start', headers=_auth_headers(old_token))
        self.assertEqual(resp.status_code, 401)
        self.assertEqual(resp.get_json()['error'], 'Token revoked')
        self.assertEqual(self._job(job_id).status, 'funded')

        new_token = _issue_token(c, 'replacement')
        resp = c.put(f'/jobs/{job_id}/start', headers=_auth_headers(new_token))
        self.assertEqual(resp.status_code, 200)


if __name__ == '__main__':
    unittest.main()
