"""Default LLM prompts and per-project overrides."""

from __future__ import annotations

import logging
import re
from typing import Dict, Optional

from models import PromptTemplate

logger = logging.getLogger(__name__)

STEP_EXTRACT_INFO = "extract_info"
STEP_VISUAL_COMPARE = "visual_compare"
STEP_VISUAL_SELECT = "visual_select"
STEP_EXTRACT_PRICE = "extract_price"
STEP_SHELF_CONTEXT = "shelf_context"


DEFAULT_EXTRACT_INFO_PROMPT = """Tu analyses la photo d'un seul emplacement de rayon \
(retail shelf) et tu dois decrire le produit qu'il contient.

ETAPE 1 : est-ce un vrai produit ? Une etiquette de prix, un element de \
rayonnage ou un espace vide ne sont PAS des produits.

ETAPE 2 : si c'est un produit, extrais :
1. brand : la marque (ex: "Tru Fru", "Reese's")
2. productName : le nom complet tel qu'ecrit sur l'emballage
3. category : la categorie (ex: "Frozen Food", "Snacks", "Beverage")
4. size : contenance ou poids (ex: "8 oz", "2 lbs", "500g")
5. description : variante, parfum ou mentions utiles

Pour CHAQUE champ, donne une confiance entre 0.0 et 1.0 :
1.0 = texte parfaitement lisible, 0.6 = on devine en partie, 0.0 = invisible.
Un champ illisible vaut null avec une confiance de 0.0.

detailsVisible : true si les inscriptions sont assez lisibles pour \
identifier le produit exact, false sinon.

Si isProduct = false, tous les champs valent null et toutes les confiances 0.0.

Reponds UNIQUEMENT avec un objet JSON, sans markdown ni texte autour :
{"isProduct": bool, "detailsVisible": bool, "extractionNotes": str,
 "brand": str|null, "brandConfidence": float,
 "productName": str|null, "productNameConfidence": float,
 "category": str|null, "categoryConfidence": float,
 "size": str|null, "sizeConfidence": float,
 "description": str|null, "descriptionConfidence": float}"""


DEFAULT_VISUAL_COMPARE_PROMPT = """Compare ces deux images de produits. \
Image 1 : le produit photographie en rayon. Image 2 : la fiche catalogue.

Analyse dans l'ordre : forme de l'emballage, couleurs principales, logo et \
elements graphiques uniques, textes (nom, variante, contenance), mise en page.

matchStatus :
- "identical" : meme produit exact (meme marque, meme variante, meme \
contenance, meme design)
- "similar" : meme famille de produit mais variante, parfum, contenance ou \
pack different, ou refonte mineure de l'emballage
- "no_match" : produits differents (autre marque, autre forme, autres couleurs)

visualSimilarity : ressemblance visuelle globale entre 0.0 et 1.0.
confidence : certitude sur matchStatus entre 0.0 et 1.0.

Reponds UNIQUEMENT avec un objet JSON :
{"matchStatus": "identical"|"similar"|"no_match", "confidence": float,
 "visualSimilarity": float, "reason": str}"""


DEFAULT_VISUAL_SELECT_PROMPT = """Plusieurs fiches catalogue semblent \
identiques au produit photographie. Choisis LA meilleure.

PRODUIT EN RAYON :
- Marque : {{brand}}
- Nom : {{productName}}
- Contenance : {{size}}
- Categorie : {{category}}

CANDIDATS ({{candidateCount}}) :
{{candidateDescriptions}}

Image 1 : produit en rayon. Images suivantes : candidats dans l'ordre \
(image 2 = candidat 1, etc.).

Compare d'abord les elements visuels uniques (logo, illustrations, motifs), \
puis utilise marque, contenance et variante pour departager. La contenance \
extraite peut etre imprecise (tolere ~20 %). Si aucun candidat n'est \
vraiment le meme produit, reponds null.

Reponds UNIQUEMENT avec un objet JSON :
{"selectedCandidateIndex": 1..{{candidateCount}}|null, "confidence": float,
 "reasoning": str}"""


DEFAULT_EXTRACT_PRICE_PROMPT = """Cette image montre un produit en rayon \
("{{product}}") dans sa partie haute et, en dessous, l'etiquette de prix du \
rayon.

Lis le PRIX de ce produit : etiquette papier, afficheur electronique ou tout \
texte avec un symbole monetaire situe sous le produit.

price : valeur numerique seule (ex: "2.49", "12.99"), null si aucun prix lisible.
currency : code ISO 4217 (ex: "USD", "EUR").
confidence : certitude entre 0.0 et 1.0, 0.0 si aucun prix.

Reponds UNIQUEMENT avec un objet JSON :
{"price": str|null, "currency": str, "confidence": float}"""


DEFAULT_SHELF_CONTEXT_PROMPT = """Cette image montre plusieurs produits \
alignes sur une meme etagere. Le produit a identifier est au CENTRE.

Ce que l'on sait deja du produit central :
- Marque : {{brand}}
- Nom : {{productName}}
- Contenance : {{size}}

Voisins a GAUCHE (du plus proche au plus loin) :
{{leftNeighbors}}

Voisins a DROITE (du plus proche au plus loin) :
{{rightNeighbors}}

Les produits d'une meme marque sont souvent regroupes en rayon, et des \
emballages de meme forme et de memes dimensions ont en general la meme \
contenance. Compare logo, couleurs et forme du produit central avec ses \
voisins pour deduire sa marque et sa contenance.

Reponds UNIQUEMENT avec un objet JSON :
{"brand": str|null, "brandConfidence": float, "size": str|null,
 "sizeConfidence": float, "notes": str}"""


_DEFAULTS: Dict[str, str] = {
    STEP_EXTRACT_INFO: DEFAULT_EXTRACT_INFO_PROMPT,
    STEP_VISUAL_COMPARE: DEFAULT_VISUAL_COMPARE_PROMPT,
    STEP_VISUAL_SELECT: DEFAULT_VISUAL_SELECT_PROMPT,
    STEP_EXTRACT_PRICE: DEFAULT_EXTRACT_PRICE_PROMPT,
    STEP_SHELF_CONTEXT: DEFAULT_SHELF_CONTEXT_PROMPT,
}


def default_prompt(step_name: str) -> str:
    if step_name not in _DEFAULTS:
        raise KeyError(f"Unknown prompt step: {step_name}")
    return _DEFAULTS[step_name]


def get_prompt_template(project_id: Optional[int], step_name: str) -> str:
    """Return the active project override for ``step_name``, else the default."""
    fallback = default_prompt(step_name)
    if project_id is None:
        return fallback

    template = (
        PromptTemplate.query.filter_by(
            project_id=project_id, step_name=step_name, is_active=True
        )
        .order_by(PromptTemplate.id.desc())
        .first()
    )
    if template is None:
        return fallback
    logger.debug("Using custom %s prompt for project %s", step_name, project_id)
    return template.prompt_template


def render_prompt(template: str, values: Dict[str, object]) -> str:
    """Substitute ``{{name}}`` placeholders; unknown placeholders are left as is."""

    def _sub(match: re.Match) -> str:
        key = match.group(1)
        if key not in values:
            return match.group(0)
        value = values[key]
        return "Unknown" if value is None else str(value)

    return re.sub(r"\{\{(\w+)\}\}", _sub, template)
