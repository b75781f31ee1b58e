# Configurações centralizadas do Detector de Paradas e Viagens
# =============================================================
# Este arquivo contém todas as constantes configuráveis do sistema.
# Altere os valores conforme necessário para ajustar o comportamento.

# ==========================================
# BANCO DE DADOS
# ==========================================

# Usado quando DATABASE_URL não está definida (nem no ambiente, nem no .env)
DEFAULT_DATABASE_URL = "sqlite:///mileage.db"

# Retenção dos pontos GPS brutos (dias)
RETENCAO_PONTOS_DIAS = 90

# ==========================================
# DETECÇÃO DE PARADAS (CLUSTERS)
# ==========================================

# Raio do cluster estacionário (metros), ajustado pela precisão de cada ponto
CLUSTER_RADIUS_M = 50.0

# Tempo mínimo de permanência para confirmar uma parada (segundos)
MIN_DWELL_SECONDS = 180

# Pontos com precisão pior que isso são descartados antes da segmentação (metros)
MAX_ACCURACY_M = 200.0

# Precisão assumida quando o aparelho não informa (metros)
DEFAULT_ACCURACY_M = 20.0

# Intervalo sem pontos que indica perda de sinal (minutos)
GPS_GAP_MINUTES = 15

# Mínimo de membros para aplicar a verificação de coerência espacial
COHERENCE_MIN_MEMBERS = 3

# ==========================================
# CONSTRUÇÃO DE VIAGENS
# ==========================================

# Linha reta -> distância real percorrida
DISTANCE_CORRECTION_FACTOR = 1.3

# Viagens abaixo disso são descartadas antes da classificação (km)
MIN_TRIP_DISTANCE_KM = 0.2

# Filtros de viagens fantasma (km)
MIN_DRIVING_DISTANCE_KM = 0.5
MIN_WALKING_DISPLACEMENT_KM = 0.1
MIN_DRIVING_DISPLACEMENT_KM = 0.05

# Viagens curtas de carro com pouca retidão são deriva circular
STRAIGHTNESS_MAX_POINTS = 10
MIN_STRAIGHTNESS_RATIO = 0.10

# Ponto com precisão acima disso conta como baixa qualidade (metros)
LOW_ACCURACY_M = 50.0

# Confiança para viagem sem pontos de trânsito
DEFAULT_CONFIDENCE = 0.80

# Reaproveita o local do fim da viagem anterior se estiver a menos disso (metros)
CONTINUITY_RADIUS_M = 100.0

# ==========================================
# CLASSIFICAÇÃO DO MEIO DE TRANSPORTE (km/h)
# ==========================================

DRIVING_MIN_AVG_KMH = 10.0
WALKING_MAX_AVG_KMH = 4.0
TIEBREAK_AVG_KMH = 6.0
SLOW_SEGMENT_KMH = 5.0
MAX_SEGMENT_KMH = 200.0

# Fração de segmentos lentos para considerar caminhada
SLOW_SEGMENT_RATIO = 0.8

# Caminhada na zona cinzenta só abaixo dessa distância (km)
WALKING_MAX_DISTANCE_KM = 1.0

# ==========================================
# CASAMENTO COM LOCAIS
# ==========================================

# Fração mínima de pontos dentro da cerca para o voto por pontos
POINT_VOTING_MIN_RATIO = 0.30

# No rematch, clusters a até N x raio entram no voto por pontos
REMATCH_VOTING_RADIUS_FACTOR = 3

# ==========================================
# MARCAÇÕES DE PONTO (ENTRADA / SAÍDA)
# ==========================================

# Marcação vinculada à parada mais próxima dentro desse raio (metros)
CLOCK_CLUSTER_RADIUS_M = 50.0

# ==========================================
# SUGESTÃO DE NOVOS LOCAIS
# ==========================================

# Ocorrências a até essa distância entre si formam uma mesma sugestão (metros)
SUGGESTION_GROUP_RADIUS_M = 30.0

# Marcações de ponto consideradas (dias para trás)
SUGGESTION_LOOKBACK_DAYS = 90

# Marcações com precisão pior que isso não sugerem local (metros)
SUGGESTION_MAX_CLOCK_ACCURACY_M = 50.0

# ==========================================
# CARONAS
# ==========================================

# Distância máxima entre inícios e entre fins (km)
CARPOOL_MAX_ENDPOINT_KM = 0.2

# Sobreposição mínima em relação à viagem mais curta
CARPOOL_MIN_OVERLAP = 0.8
